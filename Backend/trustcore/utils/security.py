import ipaddress
import re
from datetime import datetime, timezone, timedelta
from typing import Optional, Dict, Any, Union

import bcrypt
import jwt

from trustcore.config import get_settings

IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]

_DOMAIN_RE = re.compile(
    r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)*$"
)


def _jwt_secret() -> str:
    secret = get_settings().jwt_secret
    if not secret:
        # Fail fast: prevents silently accepting tokens signed with a guessable default
        raise RuntimeError("TRUSTCORE_JWT_SECRET must be set (do not default-generate it).")
    return secret


def hash_password(password: str) -> str:
    """Hash password using bcrypt."""
    salt = bcrypt.gensalt(rounds=get_settings().bcrypt_rounds)
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def verify_password(password: str, hashed: str) -> bool:
    """Verify password against bcrypt hash. Malformed hashes never verify."""
    try:
        return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    """Create JWT access token."""
    settings = get_settings()
    now = _utc_now()
    exp = now + (expires_delta or timedelta(minutes=settings.access_token_expire_minutes))
    payload = dict(data)
    payload.update({"exp": exp, "iat": now, "type": "access"})
    return jwt.encode(payload, _jwt_secret(), algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> Optional[Dict[str, Any]]:
    """Decode and validate JWT token."""
    try:
        return jwt.decode(token, _jwt_secret(), algorithms=[get_settings().jwt_algorithm])
    except jwt.ExpiredSignatureError:
        return None
    except jwt.InvalidTokenError:
        return None


def parse_ip_network(value: str) -> IPNetwork:
    """Parse an address or CIDR network. Raises ValueError on malformed input."""
    return ipaddress.ip_network(value.strip(), strict=False)


def normalize_ip_entry(value: str) -> str:
    """Canonical form of an allow/block entry: bare address for host entries, CIDR otherwise."""
    network = parse_ip_network(value)
    if network.prefixlen == network.max_prefixlen:
        return str(network.network_address)
    return str(network)


def ip_matches(ip_address: str, entry: str) -> bool:
    """True when ``ip_address`` equals ``entry`` or falls inside the ``entry`` network."""
    try:
        address = ipaddress.ip_address(ip_address.strip())
        network = parse_ip_network(entry)
    except ValueError:
        return False
    if address.version != network.version:
        return False
    return address in network


def is_valid_domain(domain: str) -> bool:
    return bool(_DOMAIN_RE.match(domain))


def email_domain(email: str) -> str:
    return email.rsplit("@", 1)[-1].strip().lower()
