import logging
from typing import Optional, Dict
from contextlib import contextmanager

from opentelemetry.trace import Tracer

from webproxy.utils import mask_token, sid_fingerprint

logger = logging.getLogger("uvicorn.error")


@contextmanager
def traced_request(
    tracer: Tracer,
    operation: str,
    sid: Optional[str],
    target: Optional[str],
    start_message: str,
    extra_attrs: Optional[Dict] = None,
):
    """Open a span for one proxied operation, tag it and log a start message."""
    with tracer.start_as_current_span(operation) as span:
        span.set_attribute("session.fingerprint", sid_fingerprint(sid))
        if target:
            span.set_attribute("proxy.target_url", target)
        if extra_attrs:
            for k, v in extra_attrs.items():
                span.set_attribute(k, v)
        logger.info(mask_token(start_message, sid))
        yield span
