from __future__ import annotations

import logging

from fastapi import FastAPI

from .api import router
from .config import get_settings, runtime_config_issues

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    settings = get_settings()
    config_issues = runtime_config_issues(settings)
    if config_issues:
        if settings.runtime_config_guard_mode == "enforce":
            raise RuntimeError(
                "runtime config guard blocked startup: "
                + "; ".join(config_issues)
                + ". Remediation: fix the listed settings or set RUNTIME_CONFIG_GUARD_MODE=warn."
            )
        if settings.runtime_config_guard_mode == "warn":
            for issue in config_issues:
                logger.warning("runtime config guard warning: %s", issue)

    app = FastAPI(title=settings.app_name, version="0.1.0")
    app.include_router(router)
    return app


app = create_app()
