import re

_URL_PATTERN = re.compile(r"https?://\S+", re.IGNORECASE)
_SHORTENER_DOMAINS = {
    "bit.ly",
    "tinyurl.com",
    "t.co",
    "goo.gl",
    "ow.ly",
}
_SUSPICIOUS_KEYWORDS = {
    "crypto",
    "bitcoin",
    "investment",
    "guaranteed profit",
    "giveaway",
    "free money",
    "prize",
    "urgent",
    "telegram",
    "whatsapp",
    "dm me",
    "wire transfer",
}
FLAG_THRESHOLD = 0.5


def assess_content(*, title: str | None, description: str | None, venue: str | None) -> tuple[float, list[str]]:
    """Score submitted text for spam and scam signals so reviewers can triage the queue.

    Returns a score clamped to [0, 1] and the list of flags that contributed to it.
    """
    lowered = f"{title or ''}\n{description or ''}\n{venue or ''}".lower()

    flags: list[str] = []
    score = 0.0

    urls = _URL_PATTERN.findall(lowered)
    if len(urls) >= 3:
        flags.append("many_links")
        score += 0.3

    if any(any(domain in url for domain in _SHORTENER_DOMAINS) for url in urls):
        flags.append("shortener_link")
        score += 0.4

    if any(keyword in lowered for keyword in _SUSPICIOUS_KEYWORDS):
        flags.append("suspicious_keywords")
        score += 0.4

    if urls and re.search(r"\b(password|otp|one[- ]time|pin|login code)\b", lowered):
        flags.append("credential_request")
        score += 0.5

    return min(1.0, score), flags
