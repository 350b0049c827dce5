from urllib.parse import urlparse


def is_valid_url(url: str) -> bool:
    """True when ``url`` parses as an absolute URL with a scheme and host."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    if not (parsed.scheme and parsed.netloc):
        return False
    return not any(ch.isspace() for ch in parsed.netloc)
