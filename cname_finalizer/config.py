# cname_finalizer/config.py
# Version: 1.0.0
# INI configuration and finalize directive parsing

import configparser
import logging
import os
from typing import Any, List, Optional, Tuple

from cname_finalizer.constants import (
    DEFAULT_CONFIG_PATH,
    DEFAULT_MAX_LOOKUP,
    DNS_DEFAULT_LISTEN_ADDRESS,
    DNS_DEFAULT_PORT,
    DNS_DEFAULT_UPSTREAM,
    DNS_QUERY_TIMEOUT,
    MAX_LOOKUP_DIRECTIVE,
    METRICS_DEFAULT_ADDRESS,
    METRICS_DEFAULT_PORT,
    PLUGIN_NAME,
)

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Invalid configuration, reported at startup"""

    pass


def parse_max_lookup(value: Any) -> int:
    """Parse a lookup budget; it must be an integer greater than 0"""
    try:
        n = int(str(value).strip())
    except ValueError:
        raise ConfigurationError(f"{MAX_LOOKUP_DIRECTIVE} parameter must be an integer, got {value!r}")
    if n <= 0:
        raise ConfigurationError(f"{MAX_LOOKUP_DIRECTIVE} parameter must be greater than 0")
    return n


def parse_finalize_directive(args: List[str]) -> int:
    """
    Parse the arguments of a finalize_cname directive

    Accepted forms:
        finalize_cname
        finalize_cname max_lookup N

    Returns:
        The lookup budget (the default when no arguments are given)
    """
    if len(args) == 0:
        return DEFAULT_MAX_LOOKUP
    if len(args) != 2:
        raise ConfigurationError(f"{PLUGIN_NAME}: wrong argument count or unexpected line ending: {args}")

    key, value = args
    if key.lower() != MAX_LOOKUP_DIRECTIVE:
        raise ConfigurationError(f"{PLUGIN_NAME}: unsupported parameter {key} for upstream setting")
    return parse_max_lookup(value)


class FinalizerConfig:
    """Configuration manager for the CNAME finalizer"""

    DEFAULT_CONFIG_PATH = DEFAULT_CONFIG_PATH
    DEFAULT_CONFIG = {
        "dns-proxy": {
            "listen-port": str(DNS_DEFAULT_PORT),
            "listen-address": DNS_DEFAULT_LISTEN_ADDRESS,
        },
        "forwarder-dns": {
            "server-address": DNS_DEFAULT_UPSTREAM,
            "server-port": str(DNS_DEFAULT_PORT),
            "timeout": str(DNS_QUERY_TIMEOUT),
        },
        "finalize": {
            "max-lookup": str(DEFAULT_MAX_LOOKUP),
        },
        "metrics": {
            "enabled": "true",
            "listen-address": METRICS_DEFAULT_ADDRESS,
            "listen-port": str(METRICS_DEFAULT_PORT),
        },
        "log-file": {
            "log-file": "none",
            "debug-level": "INFO",
            "syslog": "false",
        },
    }

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path or self.DEFAULT_CONFIG_PATH
        self.config = configparser.ConfigParser()
        self._load_defaults()
        self._load_config()

    def _load_defaults(self):
        """Load default configuration"""
        for section, options in self.DEFAULT_CONFIG.items():
            self.config.add_section(section)
            for key, value in options.items():
                self.config.set(section, key, value)

    def _load_config(self):
        """Load configuration from file"""
        if os.path.exists(self.config_path):
            try:
                self.config.read(self.config_path)
            except configparser.Error as e:
                raise ConfigurationError(f"Error reading config file {self.config_path}: {e}") from e
        else:
            logger.warning(f"Config file {self.config_path} not found, using defaults")

    def get(self, section: str, option: str, fallback: Any = None) -> str:
        """Get configuration value"""
        try:
            return self.config.get(section, option)
        except (configparser.NoSectionError, configparser.NoOptionError):
            return fallback

    def getint(self, section: str, option: str, fallback: int = 0) -> int:
        """Get integer configuration value"""
        try:
            return self.config.getint(section, option)
        except (configparser.NoSectionError, configparser.NoOptionError, ValueError):
            return fallback

    def getfloat(self, section: str, option: str, fallback: float = 0.0) -> float:
        """Get float configuration value"""
        try:
            return self.config.getfloat(section, option)
        except (configparser.NoSectionError, configparser.NoOptionError, ValueError):
            return fallback

    def getboolean(self, section: str, option: str, fallback: bool = False) -> bool:
        """Get boolean configuration value"""
        try:
            return self.config.getboolean(section, option)
        except (configparser.NoSectionError, configparser.NoOptionError, ValueError):
            return fallback

    def get_max_lookup(self) -> int:
        """
        Lookup budget from the [finalize] section; invalid values are fatal

        A directive line ("finalize_cname max_lookup 5", the plugin name being
        optional) takes precedence over the plain max-lookup option.
        """
        directive = self.get("finalize", "directive")
        if directive is not None:
            args = directive.split()
            if args and args[0].lower() == PLUGIN_NAME:
                args = args[1:]
            return parse_finalize_directive(args)
        return parse_max_lookup(self.get("finalize", "max-lookup", DEFAULT_MAX_LOOKUP))

    def get_upstream_servers(self) -> List[Tuple[str, int]]:
        """Get list of upstream DNS servers with ports

        Supports:
        - Comma-separated list: "1.1.1.1,8.8.8.8"
        - With ports: "1.1.1.1:53,192.168.1.1:5353"
        - IPv6 with or without port: "[2606:4700:4700::1111]:53"

        Falls back to the single server-address option.

        Returns:
            List of (host, port) tuples
        """
        default_port = self.getint("forwarder-dns", "server-port", DNS_DEFAULT_PORT)
        servers = []

        server_addresses = self.get("forwarder-dns", "server-addresses")
        if server_addresses:
            for server_spec in server_addresses.split(","):
                server_spec = server_spec.strip()
                if server_spec:
                    servers.append(parse_server_spec(server_spec, default_port))

        if not servers:
            server_address = self.get("forwarder-dns", "server-address", DNS_DEFAULT_UPSTREAM)
            servers.append(parse_server_spec(server_address, default_port))

        return servers


def parse_server_spec(server_spec: str, default_port: int = DNS_DEFAULT_PORT) -> Tuple[str, int]:
    """Parse "host", "host:port", "[v6]" or "[v6]:port" into (host, port)"""
    server_spec = server_spec.strip()

    # IPv6 with port: [2606:4700:4700::1111]:53
    if server_spec.startswith("[") and "]:" in server_spec:
        bracket_end = server_spec.index("]")
        host = server_spec[1:bracket_end]
        return host, _parse_port(server_spec[bracket_end + 2 :], host, default_port)

    # IPv6 without port: [2606:4700:4700::1111]
    if server_spec.startswith("[") and server_spec.endswith("]"):
        return server_spec[1:-1], default_port

    # IPv4 with port; a bare IPv6 address has more than one colon
    if server_spec.count(":") == 1:
        host, port_str = server_spec.rsplit(":", 1)
        return host, _parse_port(port_str, host, default_port)

    return server_spec, default_port


def _parse_port(port_str: str, host: str, default_port: int) -> int:
    try:
        return int(port_str)
    except ValueError:
        logger.warning(f"Invalid port '{port_str}' for server '{host}', using default {default_port}")
        return default_port
