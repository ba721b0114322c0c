# cname_finalizer/constants.py
# Version: 1.0.0
# CNAME finalizer constants - all hardcoded values in one place for easy configuration

"""
CNAME Finalizer Constants

All hardcoded values are defined here at the top of the module for easy
visibility and modification.
"""

# =============================================================================
# PLUGIN IDENTITY
# =============================================================================
PLUGIN_NAME = "finalize_cname"  # Used for metric subsystem and log context
DEFAULT_SERVER_LABEL = "dns://:53"  # Server label when no listener is known

# =============================================================================
# DNS PROTOCOL CONSTANTS
# =============================================================================
DNS_DEFAULT_PORT = 53
DNS_DEFAULT_LISTEN_ADDRESS = "0.0.0.0"
DNS_DEFAULT_UPSTREAM = "8.8.8.8"

# =============================================================================
# TIMEOUT SETTINGS
# =============================================================================
DNS_QUERY_TIMEOUT = 5.0  # Seconds to wait for a single upstream response
REQUEST_TIMEOUT = 10.0  # Deadline for one client request, all lookups included

# =============================================================================
# CNAME FINALIZING
# =============================================================================
DEFAULT_MAX_LOOKUP = 10  # Upstream lookups allowed while resolving one chain
MAX_LOOKUP_DIRECTIVE = "max_lookup"  # Directive keyword accepted by the parser

# =============================================================================
# METRICS
# =============================================================================
METRIC_NAMESPACE = "cname_finalizer"
METRICS_DEFAULT_ADDRESS = "127.0.0.1"
METRICS_DEFAULT_PORT = 9153
# Seconds; exponential buckets from 0.25ms to ~8s
LATENCY_BUCKETS = tuple(0.00025 * (2**i) for i in range(16))

# =============================================================================
# LOGGING
# =============================================================================
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
SYSLOG_FORMAT = "cname-finalizer[%(process)d]: %(levelname)s - %(message)s"
LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUP_COUNT = 5

# =============================================================================
# SERVER CONFIGURATION
# =============================================================================
MIN_PORT_NUMBER = 1  # Minimum valid port number
MAX_PORT_NUMBER = 65535  # Maximum valid port number
DEFAULT_CONFIG_PATH = "/etc/cname-finalizer/cname-finalizer.cfg"
