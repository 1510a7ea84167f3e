def shorten_url(url: str, limit: int = 120) -> str:
    """Trim long URLs (query strings, data URIs) for log lines."""
    text = str(url)
    return text if len(text) <= limit else f"{text[:limit]}..."
