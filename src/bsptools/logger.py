"""
Logging setup for bsptools.

Messages are formatted with str.format() instead of %, and every logger lives
under the ``bsptools`` namespace.
"""
from typing import (
    TYPE_CHECKING, Any, Callable, ClassVar, Dict, Generator, List, Mapping,
    Optional, Tuple, Type, Union, cast,
)
from pathlib import Path
from types import TracebackType
import contextlib
import contextvars
import logging
import os
import sys

from bsptools import StringPath


__all__ = ['LoggerAdapter', 'get_handler', 'get_logger', 'init_logging', 'context']
CTX_STACK: 'contextvars.ContextVar[List[str]]' = contextvars.ContextVar('bsptools_logger')
DEBUG_ENV = 'BSPTOOLS_DEBUG'


class LogMessage:
    """Defer str.format() of a log message until it is actually emitted."""
    fmt: str
    args: Tuple[object, ...]
    kwargs: Dict[str, object]

    def __init__(
        self,
        fmt: str,
        args: Tuple[object, ...],
        kwargs: Dict[str, object],
    ) -> None:
        self.fmt = fmt
        self.args = args
        self.kwargs = kwargs

    def __str__(self) -> str:
        # Without arguments, braces are left alone.
        if self.args or self.kwargs:
            self.fmt = self.fmt.format(*self.args, **self.kwargs)
            self.args = ()
            self.kwargs = {}
        if '\n' not in self.fmt:
            return self.fmt
        # Indent continuation lines so they stay attached to the record.
        lines = self.fmt.rstrip().split('\n')
        return '\n | '.join(lines) + '\n |___\n'


_SysExcInfoType = Union[
    Tuple[Type[BaseException], BaseException, Optional[TracebackType]],
    Tuple[None, None, None]
]
if TYPE_CHECKING:  # Only generic in stubs.
    _AdapterBase = logging.LoggerAdapter[logging.Logger]
else:
    _AdapterBase = logging.LoggerAdapter


class LoggerAdapter(_AdapterBase):
    """Wraps a logger so messages use str.format() and carry the current context."""
    logger: logging.Logger
    alias: Optional[str]

    def __init__(self, logger: logging.Logger, alias: Optional[str] = None) -> None:
        self.alias = alias
        self.logger = logger
        logging.LoggerAdapter.__init__(self, logger, extra={})

    def log(
        self,
        level: int,
        msg: Any,
        *args: Any,
        exc_info: Union[None, bool, _SysExcInfoType, BaseException] = None,
        stack_info: bool = False,
        extra: Optional[Mapping[str, object]] = None,
        stacklevel: int = 0,
        **kwargs: Any,
    ) -> None:
        """Log a message, formatting ``args`` and ``kwargs`` into it with str.format()."""
        if not self.isEnabledFor(level):
            return
        stack = CTX_STACK.get(None)
        new_extra = {} if extra is None else dict(extra)
        new_extra['bsptools_alias'] = self.alias
        new_extra['bsptools_context'] = f' ({", ".join(stack)})' if stack else ''

        if sys.version_info >= (3, 10):
            stacklevel += 2

        # noinspection PyProtectedMember
        self.logger._log(
            level,
            LogMessage(str(msg), args, kwargs),
            (),
            extra=new_extra,
            exc_info=exc_info,
            stack_info=stack_info,
            stacklevel=stacklevel,
        )

    def __getattr__(self, attr: str) -> Any:
        """Delegate unknown methods to the logger."""
        return getattr(self.logger, attr)


class Formatter(logging.Formatter):
    """Formatter which tolerates records produced by other libraries."""
    DEFAULTS: ClassVar[Dict[str, object]] = {
        'bsptools_context': '',
        'bsptools_alias': None,
    }

    def format(self, record: logging.LogRecord) -> str:
        """Fill in our extra fields, then apply the module alias."""
        for key, value in self.DEFAULTS.items():
            record.__dict__.setdefault(key, value)
        alias = record.__dict__['bsptools_alias']
        if alias is not None:
            record.module = alias
        return super().format(record)


def get_handler(filename: 'str | os.PathLike[str]') -> logging.FileHandler:
    """Rotate existing log files (keeping five), then open a fresh one."""
    path = Path(filename)
    ext = ''.join(path.suffixes)
    suffixes = ('.5', '.4', '.3', '.2', '.1', '')

    try:
        path.with_suffix(suffixes[0] + ext).unlink(missing_ok=True)
        for frm, to in zip(suffixes[1:], suffixes):
            try:
                path.with_suffix(frm + ext).rename(path.with_suffix(to + ext))
            except FileNotFoundError:
                pass
        try:
            return logging.FileHandler(path, mode='x', encoding='utf8')
        except FileExistsError:
            pass
    except PermissionError:
        pass

    # Another process holds the file, find a free slot.
    ind = 1
    while True:
        try:
            return logging.FileHandler(path.with_suffix(f'.{ind}{ext}'), mode='x', encoding='utf8')
        except (FileExistsError, PermissionError):
            pass
        ind += 1


def init_logging(
    filename: Optional[StringPath] = None,
    main_logger: str = '',
    *,
    error: Optional[Callable[[BaseException], object]] = None,
) -> logging.Logger:
    """Set up the root logger with console and (optionally) file handlers.

    Uncaught exceptions are logged through :py:func:`sys.excepthook`.

    :param filename: If set, all logs at DEBUG and above are also written here.
    :param main_logger: The name of the logger to return, under the ``bsptools`` namespace.
    :param error: Called with the exception when an uncaught exception occurs.

    Console output shows INFO and above, or DEBUG if the ``BSPTOOLS_DEBUG``
    environment variable is set to ``1``.
    """
    logger = logging.getLogger()
    logger.setLevel(logging.DEBUG)

    long_log_format = Formatter(
        '[{levelname}]{bsptools_context} {module}.{funcName}(): {message}',
        style='{',
    )
    short_log_format = Formatter(
        '[{levelname[0]}]{bsptools_context} {module}.{funcName}(): {message}',
        style='{',
    )

    if filename is not None:
        os.makedirs(os.path.dirname(os.path.abspath(filename)), exist_ok=True)
        log_handler = get_handler(filename)
        log_handler.setLevel(logging.DEBUG)
        log_handler.setFormatter(long_log_format)
        logger.addHandler(log_handler)

    if sys.stdout is not None:
        stdout_handler = logging.StreamHandler(sys.stdout)
        stdout_handler.setLevel(
            logging.DEBUG
            if os.environ.get(DEBUG_ENV, '0') == '1' else
            logging.INFO
        )
        stdout_handler.setFormatter(short_log_format)
        # Warnings and above go to stderr only.
        stdout_handler.addFilter(lambda record: record.levelno < logging.WARNING)
        logger.addHandler(stdout_handler)

    if sys.stderr is not None:
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setLevel(logging.WARNING)
        stderr_handler.setFormatter(short_log_format)
        logger.addHandler(stderr_handler)

    old_except_handler = sys.excepthook

    def except_handler(
        exc_type: Type[BaseException],
        exc_value: BaseException,
        exc_tb: Optional[TracebackType],
    ) -> None:
        """Log uncaught exceptions."""
        if isinstance(exc_value, SystemExit):
            return
        logger.error('Uncaught Exception:', exc_info=(exc_type, exc_value, exc_tb))
        if error is not None:
            error(exc_value)
        if old_except_handler is not sys.__excepthook__:
            old_except_handler(exc_type, exc_value, exc_tb)

    sys.excepthook = except_handler

    return get_logger(main_logger)


def get_logger(name: str = '', alias: Optional[str] = None) -> logging.Logger:
    """Get a logger in the ``bsptools`` namespace.

    If set, ``alias`` replaces the module name shown in messages.
    """
    if name.startswith('bsptools.'):
        log = logging.getLogger(name)
    elif name:
        log = logging.getLogger('bsptools.' + name)
    else:
        log = logging.getLogger('bsptools')
    return cast(logging.Logger, LoggerAdapter(log, alias))


@contextlib.contextmanager
def context(name: str) -> Generator[str, None, None]:
    """Include ``name`` in every message logged inside this block."""
    stack = CTX_STACK.get(None)
    if stack is None:
        stack = []
        CTX_STACK.set(stack)
    stack.append(name)
    try:
        yield name
    finally:
        popped = stack.pop()
        assert popped is name, f'Popped incorrect value: pop({popped!r}) != ctx({name!r})!'
