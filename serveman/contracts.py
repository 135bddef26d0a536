"""Versioned contract identifiers and defaults for spawned serve processes."""

SERVE_CONFIG_SCHEMA_V1 = "serve_config.v1"
INSTANCE_LIST_SCHEMA_V1 = "instance_list.v1"
ERROR_SCHEMA_V1 = "error.v1"

SUPPORTED_CONFIG_SCHEMAS = {
    SERVE_CONFIG_SCHEMA_V1,
}

DEFAULT_COMMAND = ("opencode",)
SERVE_SUBCOMMAND = "serve"
DEFAULT_HOSTNAME = "0.0.0.0"
PROBE_HOST = "127.0.0.1"
HEALTH_PATH = "/session"

PORT_MIN = 14097
PORT_MAX = 14200

EXIT_POLICY_VERIFY = "verify"
EXIT_POLICY_UNCONDITIONAL = "unconditional"
EXIT_POLICIES = {EXIT_POLICY_VERIFY, EXIT_POLICY_UNCONDITIONAL}

READY_TIMEOUT_SECONDS = 10.0
READY_POLL_INTERVAL_SECONDS = 0.5
PROBE_TIMEOUT_SECONDS = 2.0
