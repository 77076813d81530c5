"""
Connection options and process-wide settings.
"""

import re
import threading
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from .types import ConfigurationError, EncryptionMode

DEFAULT_PORT = 1433
DEFAULT_APP_NAME = "tdsclient"
DEFAULT_CHARSET = "UTF-8"
DEFAULT_MAX_TEXT_SIZE = 4096

_settings_lock = threading.Lock()
_default_max_text_size = DEFAULT_MAX_TEXT_SIZE

_PORT_SUFFIX = re.compile(r"^(?P<host>[^,:]+)[,:](?P<port>\d+)$")
_TRUE_VALUES = ("true", "yes", "1")
_FALSE_VALUES = ("false", "no", "0")


def get_default_max_text_size() -> int:
    return _default_max_text_size


def set_default_max_text_size(size: int) -> None:
    """Change the TEXTSIZE used by connections created after this call."""
    global _default_max_text_size
    if size <= 0:
        raise ConfigurationError(f"Maximum text size must be positive, got {size}")
    with _settings_lock:
        _default_max_text_size = size


def split_server(server: str) -> Tuple[str, Optional[int]]:
    """Split a ``host,port`` or ``host:port`` address.

    Named instances (``host\\INSTANCE``) are left to the native library.
    """
    match = _PORT_SUFFIX.match(server.strip())
    if match:
        return match.group("host"), int(match.group("port"))
    return server.strip(), None


def _parse_bool(value: str, key: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ConfigurationError(f"Invalid boolean value '{value}' for '{key}'")


def _parse_int(value: str, key: str) -> int:
    try:
        return int(value.strip())
    except ValueError:
        raise ConfigurationError(f"Invalid integer value '{value}' for '{key}'") from None


def _encryption_from(encrypt: Optional[str], trust_server_certificate: Optional[str]) -> EncryptionMode:
    if encrypt is None:
        return EncryptionMode.REQUEST
    lowered = encrypt.strip().lower()
    if lowered == "strict":
        return EncryptionMode.STRICT
    if lowered in ("optional", "request"):
        return EncryptionMode.REQUEST
    if lowered == "mandatory":
        lowered = "true"
    if not _parse_bool(lowered, "Encrypt"):
        return EncryptionMode.OFF
    trust = trust_server_certificate is not None and _parse_bool(
        trust_server_certificate, "TrustServerCertificate"
    )
    return EncryptionMode.REQUIRE if trust else EncryptionMode.STRICT


@dataclass
class ConnectionOptions:
    """Everything needed to log in to a server.

    Args:
        server: Host name or address, optionally ``host\\INSTANCE``, ``host,port`` or ``host:port``
        username: Login name; combined with ``domain`` for integrated authentication
        password: Login password
        database: Database selected right after login
        domain: Windows domain, sent as ``DOMAIN\\username``
        port: TCP port; overrides a port suffix on ``server``
        encryption: Login encryption mode; REQUEST leaves the library default
        use_ntlmv2: Use NTLMv2 for integrated authentication
        network_auth: Ask the library to use network (Kerberos/GSSAPI) authentication
        read_only: Declare read-only application intent
        use_utf16: Negotiate UTF-16 for wide character data
        login_timeout: Seconds to wait for the login, 0 for the library default
        query_timeout: Seconds to wait for a command, 0 for no limit
        app_name: Application name reported to the server
        charset: Client character set
        bulk_copy: Enable bulk copy on the login record
    """
    server: str
    username: str = ""
    password: str = field(default="", repr=False)
    database: Optional[str] = None
    domain: Optional[str] = None
    port: Optional[int] = None
    encryption: EncryptionMode = EncryptionMode.REQUEST
    use_ntlmv2: bool = True
    network_auth: bool = False
    read_only: bool = False
    use_utf16: bool = False
    login_timeout: int = 0
    query_timeout: int = 0
    app_name: str = DEFAULT_APP_NAME
    charset: str = DEFAULT_CHARSET
    bulk_copy: bool = True

    def __post_init__(self):
        if not self.server or not self.server.strip():
            raise ConfigurationError("A server address is required")
        if isinstance(self.encryption, str):
            try:
                self.encryption = EncryptionMode(self.encryption.lower())
            except ValueError:
                raise ConfigurationError(f"Unknown encryption mode '{self.encryption}'") from None
        if self.port is not None and not 0 < self.port < 65536:
            raise ConfigurationError(f"Invalid port {self.port}")
        if self.login_timeout < 0 or self.query_timeout < 0:
            raise ConfigurationError("Timeouts must not be negative")

    @property
    def host(self) -> str:
        """Server address handed to the library, without any port suffix."""
        return split_server(self.server)[0]

    @property
    def effective_port(self) -> Optional[int]:
        return self.port if self.port is not None else split_server(self.server)[1]

    @property
    def login_name(self) -> str:
        if self.domain:
            return f"{self.domain}\\{self.username}"
        return self.username

    @classmethod
    def from_connection_string(cls, connection_string: str, **overrides) -> "ConnectionOptions":
        """Parse an ADO-style ``Key=Value;...`` connection string.

        Args:
            connection_string: e.g. ``"Server=db,1433;Database=app;User Id=sa;Password=..."``
            **overrides: Field values that win over the string

        Returns:
            ConnectionOptions

        Raises:
            ConfigurationError: If no server is given or a value is malformed
        """
        pairs: Dict[str, str] = {}
        for part in (connection_string or "").split(";"):
            if "=" not in part:
                continue
            key, value = part.split("=", 1)
            pairs[key.strip().lower()] = value.strip()

        server = (pairs.get("server") or pairs.get("data source") or pairs.get("address")
                  or pairs.get("addr") or pairs.get("network address"))
        if not server and not overrides.get("server"):
            raise ConfigurationError("No Server= found in connection string")

        kwargs = {
            "server": server,
            "username": pairs.get("user id") or pairs.get("uid") or pairs.get("user") or "",
            "password": pairs.get("password") or pairs.get("pwd") or "",
            "database": pairs.get("database") or pairs.get("initial catalog") or None,
            "domain": pairs.get("domain") or None,
            "encryption": _encryption_from(
                pairs.get("encrypt"),
                pairs.get("trustservercertificate") or pairs.get("trust server certificate"),
            ),
            "read_only": pairs.get("applicationintent", "").lower() == "readonly",
        }
        if "port" in pairs:
            kwargs["port"] = _parse_int(pairs["port"], "Port")
        timeout = pairs.get("connect timeout") or pairs.get("connection timeout") or pairs.get("timeout")
        if timeout:
            kwargs["login_timeout"] = _parse_int(timeout, "Connect Timeout")
        if pairs.get("command timeout"):
            kwargs["query_timeout"] = _parse_int(pairs["command timeout"], "Command Timeout")
        if pairs.get("application name") or pairs.get("app"):
            kwargs["app_name"] = pairs.get("application name") or pairs.get("app")
        if pairs.get("integrated security", "").lower() in ("true", "yes", "sspi"):
            kwargs["network_auth"] = True

        kwargs.update(overrides)
        return cls(**kwargs)
