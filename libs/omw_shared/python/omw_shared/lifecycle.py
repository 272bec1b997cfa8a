import inspect
import logging
from collections.abc import Callable

from fastapi import FastAPI

logger = logging.getLogger("omw.lifecycle")


def _wrap(kind: str, func: Callable) -> Callable:
    if inspect.iscoroutinefunction(func):
        async def async_hook():
            logger.info("%s hook %s", kind, func.__name__)
            return await func()
        async_hook.__name__ = func.__name__
        return async_hook

    def hook():
        logger.info("%s hook %s", kind, func.__name__)
        return func()
    hook.__name__ = func.__name__
    return hook


def register_startup(app: FastAPI) -> Callable[[Callable], Callable]:
    """
    Append a startup hook (plain or ``async def``) to the app's router.

        @register_startup(app)
        def _create_tables(): ...
    """
    def decorator(func: Callable) -> Callable:
        app.router.on_startup.append(_wrap("startup", func))
        return func
    return decorator


def register_shutdown(app: FastAPI) -> Callable[[Callable], Callable]:
    def decorator(func: Callable) -> Callable:
        app.router.on_shutdown.append(_wrap("shutdown", func))
        return func
    return decorator
