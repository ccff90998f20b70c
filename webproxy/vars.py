import os

SERVICE_NAME = os.getenv("SERVICE_NAME", "webproxy")
HOST = os.environ.get("HOSTNAME", "0.0.0.0")
PORT = int(os.environ.get("PORT", "3000"))

PROXY_BASE_PATH = os.environ.get("PROXY_BASE_PATH", "").rstrip("/")
PROXY_TIMEOUT = float(os.environ.get("PROXY_TIMEOUT", "15"))
MAX_REDIRECTS = int(os.environ.get("MAX_REDIRECTS", "5"))

SESSION_COOKIE_NAME = os.environ.get("SESSION_COOKIE_NAME", "proxy_sid")
SESSION_COOKIE_SECURE = (
    os.environ.get("SESSION_COOKIE_SECURE", "false").lower() == "true"
)
JAR_CAPACITY = int(os.environ.get("JAR_CAPACITY", "1000"))
JAR_TTL_SECONDS = float(os.environ.get("JAR_TTL_SECONDS", "1800"))

# "rewrite" keeps scripts and rewrites literal fetch()/WebSocket() URLs,
# "strip" removes scripts and inlines <noscript> content.
SCRIPT_POLICY = os.environ.get("SCRIPT_POLICY", "rewrite").lower()
REWRITE_CSS_URLS = os.environ.get("REWRITE_CSS_URLS", "true").lower() == "true"
CONCEAL_ORIGIN = os.environ.get("CONCEAL_ORIGIN", "false").lower() == "true"

PROXY_KEY = os.environ.get("PROXY_KEY", "")
PROXY_KEY_HEADER = os.environ.get("PROXY_KEY_HEADER", "x-proxy-key")
PROXY_KEY_COOKIE_NAME = os.environ.get("PROXY_KEY_COOKIE_NAME", "proxy_key")
ALLOWED_ORIGINS = [
    o.strip().rstrip("/")
    for o in os.environ.get("ALLOWED_ORIGINS", "").split(",")
    if o.strip()
]

PROXY_CSP = os.environ.get(
    "PROXY_CSP",
    "default-src 'self' data: blob: 'unsafe-inline' 'unsafe-eval'; "
    "img-src 'self' data: blob:; connect-src 'self'; frame-ancestors 'self'",
)

OTLP_ENDPOINT = os.getenv("OTLP_ENDPOINT")
OTLP_HEADERS = os.getenv("OTLP_HEADERS", "")
