"""
Type aliases for the generic stdlib classes, which are not subscriptable at runtime.

The type-checkers see ``asyncio.Task[Any]`` etc., the runtime sees the bare classes.
"""
import asyncio
import logging
from typing import TYPE_CHECKING, Any, Union

if TYPE_CHECKING:
    LoggerAdapter = logging.LoggerAdapter[Any]
    Task = asyncio.Task[Any]
else:
    LoggerAdapter = logging.LoggerAdapter
    Task = asyncio.Task

TimerHandle = asyncio.TimerHandle

# Both the module-level loggers of the machinery and the per-object loggers are accepted.
Logger = Union[logging.Logger, LoggerAdapter]
