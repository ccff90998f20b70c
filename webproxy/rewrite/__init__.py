from .css import rewrite_css
from .headers import filter_response_headers
from .html_rewriter import RewriteContext, rewrite, rewrite_bytes
from .links import proxy_url, proxy_path_url, unwrap_proxy_url, websocket_url

__all__ = [
    "rewrite_css",
    "filter_response_headers",
    "RewriteContext",
    "rewrite",
    "rewrite_bytes",
    "proxy_url",
    "proxy_path_url",
    "unwrap_proxy_url",
    "websocket_url",
]
