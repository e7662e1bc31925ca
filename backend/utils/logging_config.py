import logging
import logging.handlers
import contextvars
from pathlib import Path
from typing import Optional

from core.config import settings
from core.security import verify_token
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

APP_LOGGER_NAME = "operis"

# Loggers that also get a dedicated file next to app.log
CRON_LOGGERS = ("services.cron_service", "services.gateway_client", "services.schedule")
PAYMENT_LOGGERS = ("services.deposit_service", "api.v1.deposits")


def _ensure_log_dir(directory: Path) -> None:
    directory.mkdir(parents=True, exist_ok=True)


def map_log_level(level_name: str) -> int:
    level = logging.getLevelName((level_name or "INFO").upper())
    return level if isinstance(level, int) else logging.INFO


user_id_var = contextvars.ContextVar("user_id", default="-")
api_var = contextvars.ContextVar("api", default="-")


class ContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        # Scheduler records have no request; they keep the "-" defaults
        record.user_id = user_id_var.get()
        record.api = api_var.get()
        return True


def _rotating_handler(filename: str, level: int, formatter: logging.Formatter, log_dir: Path) -> logging.Handler:
    handler = logging.handlers.TimedRotatingFileHandler(
        filename=str(log_dir / filename),
        when="midnight",
        interval=1,
        backupCount=max(int(settings.LOG_TTL_DAYS), 0),
        encoding="utf-8",
        utc=True,
    )
    handler.suffix = "%Y-%m-%d"
    handler.setLevel(level)
    handler.setFormatter(formatter)
    handler.addFilter(ContextFilter())
    return handler


def _build_handlers(level: int, log_dir: Path) -> dict[str, logging.Handler]:
    formatter = logging.Formatter(
        fmt="%(levelname)s - %(asctime)s - %(name)s - %(user_id)s - %(api)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(ContextFilter())

    return {
        "app": _rotating_handler("app.log", level, formatter, log_dir),
        "access": _rotating_handler("access.log", level, formatter, log_dir),
        "error": _rotating_handler("error.log", logging.WARNING, formatter, log_dir),
        "cron": _rotating_handler("cron.log", level, formatter, log_dir),
        "payments": _rotating_handler("payments.log", level, formatter, log_dir),
        "console": console_handler,
    }


def _reset_handlers(target_logger: logging.Logger, handlers: list[logging.Handler], level: int) -> None:
    for h in list(target_logger.handlers):
        target_logger.removeHandler(h)
    for h in handlers:
        target_logger.addHandler(h)
    target_logger.setLevel(level)


def configure_logging(app_logger_name: Optional[str] = None) -> logging.Logger:
    """Configure logging with daily rotation and TTL-based retention.

    - Rotates at midnight; keeps last LOG_TTL_DAYS files
    - Scheduler and gateway records also go to cron.log
    - Deposit and webhook records also go to payments.log
    """
    log_dir = Path(settings.LOG_DIR)
    _ensure_log_dir(log_dir)

    level = map_log_level(settings.LOG_LEVEL)
    handlers = _build_handlers(level, log_dir)
    common = [handlers["app"], handlers["error"], handlers["console"]]

    _reset_handlers(logging.getLogger(), common, level)

    app_logger = logging.getLogger(app_logger_name or APP_LOGGER_NAME)
    app_logger.propagate = False
    _reset_handlers(app_logger, common, level)

    # Domain loggers keep propagating to root and add their own file
    for name in CRON_LOGGERS:
        _reset_handlers(logging.getLogger(name), [handlers["cron"]], level)
    for name in PAYMENT_LOGGERS:
        _reset_handlers(logging.getLogger(name), [handlers["payments"]], level)

    for name in ("uvicorn", "uvicorn.error", "fastapi"):
        lgr = logging.getLogger(name)
        lgr.propagate = False
        _reset_handlers(lgr, common, level)
    access_logger = logging.getLogger("uvicorn.access")
    access_logger.propagate = False
    _reset_handlers(access_logger, [handlers["access"], handlers["console"]], level)

    return app_logger


def _user_from_authorization(header: Optional[str]) -> str:
    if not header or not header.startswith("Bearer "):
        return "-"
    payload = verify_token(header.split(" ", 1)[1])
    if not payload:
        return "-"
    return payload.get("user_id") or payload.get("sub") or "-"


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        user_token = user_id_var.set(_user_from_authorization(request.headers.get("authorization")))
        api_token = api_var.set(f"{request.method} {request.url.path}")
        try:
            return await call_next(request)
        finally:
            user_id_var.reset(user_token)
            api_var.reset(api_token)
