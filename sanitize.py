"""HTML input filtering and log payload redaction."""

import re
from typing import Any

from bs4 import BeautifulSoup, Comment
from bs4.dammit import EntitySubstitution
from bs4.formatter import HTMLFormatter

REDACTED = "[REDACTED]"

SENSITIVE_KEY_PATTERN = re.compile(
    r"(password|passwd|secret|token|api[_-]?key|authorization|cookie|session|private[_-]?key|credential)",
    re.IGNORECASE,
)

REMOVED_ELEMENTS = (
    "script", "noscript", "iframe", "frame", "frameset", "object", "embed", "applet",
    "form", "input", "button", "textarea", "select", "base", "meta", "link",
)
URL_ATTRIBUTES = {
    "href", "src", "lowsrc", "dynsrc", "background", "action", "formaction", "xlink:href", "poster", "srcset",
}
DANGEROUS_SCHEMES = ("javascript:", "vbscript:", "data:")

# Minimal escaping, void elements without a trailing slash.
_FRAGMENT_FORMATTER = HTMLFormatter(entity_substitution=EntitySubstitution.substitute_xml, void_element_close_prefix=None)

# Browsers ignore control characters and whitespace inside a URL scheme.
_URL_NOISE = re.compile(r"[\x00-\x20]+")
_DANGEROUS_STYLE = re.compile(r"javascript:|vbscript:|expression\s*\(|behavior\s*:|-moz-binding", re.IGNORECASE)


def _attribute_text(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        return " ".join(value)
    return str(value)


def _is_dangerous_attribute(name: str, value: Any) -> bool:
    name = name.lower()
    if name.startswith("on") or name.startswith("data-"):
        return True
    text = _attribute_text(value)
    if name in URL_ATTRIBUTES:
        return _URL_NOISE.sub("", text).lower().startswith(DANGEROUS_SCHEMES)
    if name == "style":
        return bool(_DANGEROUS_STYLE.search(text))
    return False


def sanitize_html(html: str) -> str:
    """Strip script-capable elements and attributes from an HTML fragment.

    The fragment is parsed with BeautifulSoup, so entity-encoded schemes and
    slash-separated attributes are seen the way a browser sees them.
    """
    soup = BeautifulSoup(html, "html.parser")
    for comment in soup.find_all(string=lambda text: isinstance(text, Comment)):
        comment.extract()
    for element in soup.find_all(REMOVED_ELEMENTS):
        element.extract()
    for element in soup.find_all(True):
        for name in [name for name, value in element.attrs.items() if _is_dangerous_attribute(name, value)]:
            del element[name]
    return soup.decode(formatter=_FRAGMENT_FORMATTER).strip()


def sanitize_log_data(data: Any) -> Any:
    if isinstance(data, dict):
        cleaned = {}
        for key, value in data.items():
            if isinstance(key, str) and SENSITIVE_KEY_PATTERN.search(key):
                cleaned[key] = REDACTED
            else:
                cleaned[key] = sanitize_log_data(value)
        return cleaned
    if isinstance(data, (list, tuple)):
        return [sanitize_log_data(item) for item in data]
    return data
