#!/usr/bin/env python3
"""
Main entry point for the CNAME finalizer
Forwards queries upstream and finalizes dangling CNAME chains, UDP and TCP
"""

import argparse
import logging
import logging.handlers
import os
import signal
import sys

from cname_finalizer.config import ConfigurationError, FinalizerConfig, parse_max_lookup, parse_server_spec
from cname_finalizer.constants import (
    DEFAULT_CONFIG_PATH,
    DNS_DEFAULT_LISTEN_ADDRESS,
    DNS_DEFAULT_PORT,
    DNS_QUERY_TIMEOUT,
    LOG_FILE_BACKUP_COUNT,
    LOG_FILE_MAX_BYTES,
    LOG_FORMAT,
    MAX_PORT_NUMBER,
    METRICS_DEFAULT_ADDRESS,
    METRICS_DEFAULT_PORT,
    MIN_PORT_NUMBER,
    SYSLOG_FORMAT,
)


def setup_logging(log_file=None, log_level="INFO", syslog=False):
    """Setup logging configuration"""
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    # Setup root logger
    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)

    # Clear existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    formatter = logging.Formatter(LOG_FORMAT)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file and log_file.lower() != "none":
        try:
            log_dir = os.path.dirname(log_file)
            if log_dir and not os.path.exists(log_dir):
                os.makedirs(log_dir, mode=0o755)

            file_handler = logging.handlers.RotatingFileHandler(
                log_file, maxBytes=LOG_FILE_MAX_BYTES, backupCount=LOG_FILE_BACKUP_COUNT
            )
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)
        except OSError as e:
            print(f"Warning: Could not setup file logging to {log_file}: {e}", file=sys.stderr)

    if syslog:
        try:
            syslog_handler = logging.handlers.SysLogHandler(address="/dev/log")
            syslog_handler.setFormatter(logging.Formatter(SYSLOG_FORMAT))
            root_logger.addHandler(syslog_handler)
        except OSError as e:
            print(f"Warning: Could not setup syslog: {e}", file=sys.stderr)


def _setup_signal_handlers(logger):
    """Setup signal handlers for graceful shutdown"""

    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        from twisted.internet import reactor

        reactor.stop()  # type: ignore[attr-defined]  # Twisted reactor

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)


def _validate_port(value):
    """Validate port number is in valid range"""
    try:
        port = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid port number: {value}")
    if port < MIN_PORT_NUMBER or port > MAX_PORT_NUMBER:
        raise argparse.ArgumentTypeError(f"Port must be between {MIN_PORT_NUMBER} and {MAX_PORT_NUMBER}")
    return port


def _validate_max_lookup(value):
    """argparse type for --max-lookup"""
    try:
        return parse_max_lookup(value)
    except ConfigurationError as e:
        raise argparse.ArgumentTypeError(str(e))


def _parse_arguments(argv=None):
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        description="DNS forwarder that resolves dangling CNAME chains before answering clients.",
    )
    parser.add_argument("-c", "--config", default=DEFAULT_CONFIG_PATH, help="Configuration file path")
    parser.add_argument("-l", "--logfile", help="Log file path (overrides config)")
    parser.add_argument("-L", "--loglevel", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Log level")
    parser.add_argument("-p", "--port", type=_validate_port, help="Listen port (overrides config)")
    parser.add_argument("-a", "--address", help="Listen address (overrides config)")
    parser.add_argument(
        "-u",
        "--upstream",
        help="Upstream DNS server (overrides ALL configured servers). "
        "Format: IP[:port] or [IPv6]:port. "
        "Examples: 1.1.1.1, 8.8.8.8:53, [2606:4700:4700::1111]:53",
    )
    parser.add_argument(
        "-m",
        "--max-lookup",
        type=_validate_max_lookup,
        help="Maximum upstream lookups while resolving one CNAME chain (overrides config)",
    )
    parser.add_argument("--no-metrics", action="store_true", help="Disable the Prometheus metrics endpoint")
    parser.add_argument("-v", "--version", action="store_true", help="Show version")

    return parser.parse_args(argv)


def _handle_version_check(args):
    """Handle version check and exit if requested"""
    if args.version:
        from cname_finalizer import __version__

        print(f"CNAME finalizer version {__version__}")
        sys.exit(0)


def _load_configuration(config_path):
    """Load configuration from file"""
    print(f"Loading configuration from: {config_path}")
    return FinalizerConfig(config_path)


def _get_logging_config(config, args):
    """Get logging configuration from config and args"""
    log_file = args.logfile or config.get("log-file", "log-file")
    log_level = args.loglevel or config.get("log-file", "debug-level", "INFO")
    syslog = config.getboolean("log-file", "syslog", False)

    return log_file, log_level, syslog


def _get_resolver_config(config, args):
    """Get resolver configuration from config and args"""
    listen_port = args.port or config.getint("dns-proxy", "listen-port", DNS_DEFAULT_PORT)
    listen_address = args.address or config.get("dns-proxy", "listen-address", DNS_DEFAULT_LISTEN_ADDRESS)

    upstream_servers = config.get_upstream_servers()
    if args.upstream:
        upstream_servers = [parse_server_spec(args.upstream, DNS_DEFAULT_PORT)]

    max_lookup = args.max_lookup or config.get_max_lookup()

    return {
        "listen_port": listen_port,
        "listen_address": listen_address,
        "upstream_servers": upstream_servers,
        "upstream_timeout": config.getfloat("forwarder-dns", "timeout", DNS_QUERY_TIMEOUT),
        "max_lookup": max_lookup,
        "metrics_enabled": config.getboolean("metrics", "enabled", True) and not args.no_metrics,
        "metrics_address": config.get("metrics", "listen-address", METRICS_DEFAULT_ADDRESS),
        "metrics_port": config.getint("metrics", "listen-port", METRICS_DEFAULT_PORT),
    }


def _validate_config(resolver_config, logger):
    """Validate configuration and log settings"""
    if not resolver_config["upstream_servers"]:
        raise ConfigurationError("No upstream DNS servers configured")

    logger.info("Configuration loaded:")
    logger.info(f"  Listen: {resolver_config['listen_address']}:{resolver_config['listen_port']}")
    logger.info("  Upstream servers:")
    for host, port in resolver_config["upstream_servers"]:
        logger.info(f"    - {host}:{port}")
    logger.info(f"  Max CNAME lookups: {resolver_config['max_lookup']}")
    logger.info(f"  Metrics: {'enabled' if resolver_config['metrics_enabled'] else 'disabled'}")


def _server_label(listen_address, listen_port):
    """Server identity used to label metrics"""
    if ":" in listen_address:
        return f"dns://[{listen_address}]:{listen_port}"
    return f"dns://{listen_address}:{listen_port}"


def _initialize_server(resolver_config):
    """Build the handler chain and the server factory that drives it"""
    from cname_finalizer import __version__
    from cname_finalizer.dns_server import FinalizerServerFactory
    from cname_finalizer.finalize import Finalize
    from cname_finalizer.forward import Forward
    from cname_finalizer.metrics import init_metrics
    from cname_finalizer.plugin import build_chain
    from cname_finalizer.upstream import Upstream

    collector = init_metrics(resolver_config["metrics_enabled"])
    collector.set_info(__version__, resolver_config)

    upstream = Upstream(resolver_config["upstream_servers"], timeout=resolver_config["upstream_timeout"])
    chain = build_chain(
        [
            Finalize(upstream, metrics=collector, max_lookup=resolver_config["max_lookup"]),
            Forward(upstream),
        ]
    )

    label = _server_label(resolver_config["listen_address"], resolver_config["listen_port"])
    return FinalizerServerFactory(chain, server_label=label), collector


def _handle_bind_error(error, port, address, logger):
    """Handle port binding errors with helpful messages"""
    error_msg = str(error)

    if "Address already in use" in error_msg:
        logger.error(f"Port {port} is already in use on {address}")
        logger.error("Please check if another instance is running or use a different port")
    elif "Permission denied" in error_msg:
        logger.error(f"Permission denied to bind to port {port}")
        if port < 1024:
            logger.error("Ports below 1024 require root privileges")
    else:
        logger.error(f"Failed to bind to {address}:{port}: {error}")

    sys.exit(1)


def _bind(reactor, listen_port, listen_address, factory, logger):
    """Bind UDP and TCP listeners to the same address and port"""
    from twisted.internet.error import CannotListenError
    from twisted.names import dns

    try:
        udp_server = reactor.listenUDP(listen_port, dns.DNSDatagramProtocol(factory), interface=listen_address)

        # Port 0 picks a free port; TCP follows whatever UDP got
        actual_port = udp_server.getHost().port
        tcp_server = reactor.listenTCP(actual_port, factory, interface=listen_address)
    except CannotListenError as e:
        _handle_bind_error(e, listen_port, listen_address, logger)

    logger.info(f"CNAME finalizer listening on {listen_address}:{actual_port} (UDP + TCP)")
    if listen_port == 0:
        print(f"ACTUAL_PORT={actual_port}")
    return udp_server, tcp_server


def start_dns_server(resolver_config, factory, collector, logger):
    """Start the DNS server and metrics endpoint, then run the reactor"""
    from twisted.internet import reactor

    from cname_finalizer.metrics import MetricsServer

    _setup_signal_handlers(logger)

    _bind(reactor, resolver_config["listen_port"], resolver_config["listen_address"], factory, logger)

    metrics_server = MetricsServer(
        collector,
        listen_address=resolver_config["metrics_address"],
        listen_port=resolver_config["metrics_port"],
    )
    metrics_server.start()

    logger.info("CNAME finalizer started successfully (UDP + TCP)")
    reactor.run()  # type: ignore[attr-defined]  # Twisted reactor

    metrics_server.stop()
    logger.info("CNAME finalizer stopped")


def main(argv=None):
    """Main entry point"""
    args = _parse_arguments(argv)

    _handle_version_check(args)

    try:
        config = _load_configuration(args.config)

        log_file, log_level, syslog = _get_logging_config(config, args)
        setup_logging(log_file, log_level, syslog)
        logger = logging.getLogger("cname_finalizer")

        logger.info("Starting CNAME finalizer")

        resolver_config = _get_resolver_config(config, args)
        _validate_config(resolver_config, logger)

        factory, collector = _initialize_server(resolver_config)

        start_dns_server(resolver_config, factory, collector, logger)

    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        print(f"Error starting CNAME finalizer: {e}", file=sys.stderr)
        import traceback

        traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    main()
