import os

BRIDGE_TOKEN = os.environ.get("BRIDGE_TOKEN", "")
BRIDGE_HOST = os.environ.get("BRIDGE_HOST", "0.0.0.0")
BRIDGE_PORT = int(os.environ.get("BRIDGE_PORT", "8788"))

# Comma-separated tool names. "*" (or nothing) leaves execution unrestricted.
_allowed_tools = os.environ.get("ALLOWED_TOOLS", "*").strip()
ALLOWED_TOOLS = (
    None
    if _allowed_tools in ("", "*")
    else [t.strip() for t in _allowed_tools.split(",") if t.strip()]
)

COMMAND_TIMEOUT = int(os.environ.get("COMMAND_TIMEOUT", "300000"))  # ms

ALLOWED_FILE_ROOTS = [
    p.strip() for p in os.environ.get("ALLOWED_FILE_ROOTS", "").split(",") if p.strip()
]
MAX_FILE_SIZE = int(os.environ.get("MAX_FILE_SIZE", str(5 * 1024 * 1024)))

JOB_RETENTION_SECONDS = float(os.environ.get("JOB_RETENTION_SECONDS", "3600"))
JOB_SWEEP_INTERVAL_SECONDS = float(os.environ.get("JOB_SWEEP_INTERVAL_SECONDS", "300"))

LOG_LEVEL = os.environ.get("LOG_LEVEL", "info")
LOG_DIR = os.environ.get(
    "BRIDGE_LOG_DIR",
    os.path.join(os.path.expanduser("~"), ".remote-bridge", "logs"),
)

CORS_ALLOWED_ORIGINS = os.environ.get("CORS_ALLOWED_ORIGINS", "*")

# Tunnel watcher and its notification sinks.
TUNNEL_URL_FILE = os.environ.get("TUNNEL_URL_FILE", "tunnel-url.txt")
TUNNEL_OPENAPI_FILE = os.environ.get("TUNNEL_OPENAPI_FILE", "openapi.json")
MEMORY_URL = os.environ.get("MEMORY_URL", "")
MEMORY_TOKEN = os.environ.get("MEMORY_TOKEN", "")
EVOLUTION_URL = os.environ.get("EVOLUTION_URL", "")
EVOLUTION_KEY = os.environ.get("EVOLUTION_KEY", "")
EVOLUTION_INSTANCE = os.environ.get("EVOLUTION_INSTANCE", "")
NOTIFY_NUMBER = os.environ.get("NOTIFY_NUMBER", "")
