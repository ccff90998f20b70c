import re

from webproxy.rewrite.links import rewrite_reference
from webproxy.vars import PROXY_BASE_PATH

# url(foo), url('foo'), url("foo") with optional inner whitespace
CSS_URL_PATTERN = re.compile(
    r"""url\(\s*(?P<quote>['"]?)(?P<url>.*?)(?P=quote)\s*\)""",
    re.IGNORECASE | re.DOTALL,
)
# @import "foo" / @import 'foo' (the url() form is covered above)
CSS_IMPORT_PATTERN = re.compile(
    r"""(?P<lead>@import\s+)(?P<quote>['"])(?P<url>[^'"]+)(?P=quote)""",
    re.IGNORECASE,
)


def rewrite_css(css: str, base: str, prefix: str = PROXY_BASE_PATH) -> str:
    """Rewrite every ``url(...)`` and ``@import "..."`` reference in ``css``."""
    if not css:
        return css

    def _url(match: re.Match) -> str:
        original = match.group("url")
        rewritten = rewrite_reference(original, base, prefix)
        if rewritten == original:
            return match.group(0)
        return f'url("{rewritten}")'

    def _import(match: re.Match) -> str:
        original = match.group("url")
        rewritten = rewrite_reference(original, base, prefix)
        if rewritten == original:
            return match.group(0)
        return f'{match.group("lead")}"{rewritten}"'

    css = CSS_URL_PATTERN.sub(_url, css)
    return CSS_IMPORT_PATTERN.sub(_import, css)
