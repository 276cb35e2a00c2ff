import os

ALLOWED_LOG_TYPES = {"DEBUG", "INFO", "WARN", "ERROR"}
ALLOWED_ACTORS = {
    "GRAPH",
    "SESSION",
    "POOL",
    "IDENTITY",
    "PERMISSIONS",
    "CRAWLER",
    "SINK",
    "FLASK_API",
    "DB_CONN",
}


def _debug_enabled() -> bool:
    return os.getenv("CRAWL_LOG_LEVEL", "INFO").strip().upper() == "DEBUG"


def _sanitize_text(text: object) -> str:
    message = str(text) if text is not None else ""
    message = message.replace("\n", " ").replace("\r", " ").strip()
    if not message:
        return "-"
    if len(message) > 600:
        return message[:597] + "..."
    return message


def emit(log_type: str, actor: str, text: object):
    level = (log_type or "INFO").upper()
    if level not in ALLOWED_LOG_TYPES:
        level = "INFO"
    if level == "DEBUG" and not _debug_enabled():
        return

    source = (actor or "").upper()
    if source not in ALLOWED_ACTORS:
        source = "SESSION"

    message = _sanitize_text(text)
    print(f"[{level}] [{source}]: {message}", flush=True)
