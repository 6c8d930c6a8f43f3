"""Global constants for titan dev."""

# Watcher timings (milliseconds)

DEFAULT_DEBOUNCE_MS = 300
DEFAULT_WATCH_STEP_MS = 50

# Engine supervision (seconds)

DEFAULT_KILL_TIMEOUT = 0.5
DEFAULT_STABILITY_THRESHOLD = 15.0
DEFAULT_RETRY_DELAY = 2.0
DEFAULT_SLOW_START_WARNING = 30.0

# Retry configuration
DEFAULT_MAX_RETRIES = 5
DEFAULT_TYPECHECK_MAX_RESTARTS = 10

# Project layout
APP_DIR = "app"
ACTIONS_DIR = "app/actions"
SERVER_DIR = "server"
DEFAULT_OUTPUT_DIR = "dist"
COMPILED_APP_DIR = ".titan"
ENV_FILE = ".env"
TSCONFIG_FILE = "tsconfig.json"

# Directories whose changes never trigger a rebuild
IGNORED_DIRS = ("dist", ".titan", "server", "node_modules")

# Engine output signatures
READY_MARKERS = ("Titan server running", "████████╗")
BANNER_FRAGMENTS = ("Titan server running", "████████╗", "╚══", "   ██║", "   ╚═╝")
PORT_CONFLICT_SIGNATURES = (
    "Address already in use",
    "address in use",
    "os error 10048",
    "EADDRINUSE",
    "AddrInUse",
)

# Environment passed to the engine in dev mode
DEV_MODE_ENV = {"TITAN_ENV": "development", "Titan_Dev": "1"}
ENGINE_BINARY_ENV = "TITAN_ENGINE_BINARY"
OUT_DIR_ENV = "TITAN_OUT_DIR"
