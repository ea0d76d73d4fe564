"""Test the logging system."""
from logging import Logger, getLogger as stdlib_getlogger
import sys

import pytest

from bsptools.logger import context, get_logger, init_logging


def function(logger: Logger) -> None:
    """Test detecting different methods."""
    logger.info('Starting other function')
    logger.warning('Used wrong logic')


def setup_logging(monkeypatch: pytest.MonkeyPatch) -> Logger:
    """Set up logging to the captured streams, undoing the global changes afterwards.

    This must be called inside the test, so the handlers bind to the streams capsys installs.
    """
    # Init_logging modifies sys.excepthook, so ensure we undo that.
    monkeypatch.setattr(sys, 'excepthook', sys.excepthook)
    monkeypatch.setattr(stdlib_getlogger(), 'handlers', [])
    monkeypatch.delenv('BSPTOOLS_DEBUG', raising=False)
    return init_logging()


def test_logging_output(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    """Test the output of logging to the console."""
    root = setup_logging(monkeypatch)
    root.info('hello there')
    root.debug('Hidden by default')
    root.error('Root error!:\n- Something failed.')
    get_logger('another').warning('A problem: {}', 45)
    function(root)

    out, err = capsys.readouterr()
    assert '[I] ' in out
    assert 'hello there' in out
    assert 'Starting other function' in out
    assert 'Hidden by default' not in out + err
    # Warnings only go to stderr.
    assert 'Used wrong logic' in err
    assert 'Used wrong logic' not in out
    assert 'A problem: 45' in err
    assert '[E] ' in err
    assert 'Root error!:\n | - Something failed.\n |___' in err
    assert '.function(): Starting other function' in out


def test_debug_env(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    """Setting the environment variable shows debug messages on the console."""
    monkeypatch.setattr(sys, 'excepthook', sys.excepthook)
    monkeypatch.setattr(stdlib_getlogger(), 'handlers', [])
    monkeypatch.setenv('BSPTOOLS_DEBUG', '1')
    root = init_logging()
    root.debug('Now visible')
    out, err = capsys.readouterr()
    assert '[D] ' in out
    assert 'Now visible' in out


def test_context(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    """Contexts are listed in each message logged inside them."""
    root = setup_logging(monkeypatch)
    with context('First'):
        root.info('Message')
        with context('Second'):
            root.info('More messages')
        root.warning('A warning.')
    root.info('Outside')

    out, err = capsys.readouterr()
    assert '[I] (First) ' in out
    assert '[I] (First, Second) ' in out
    assert '[W] (First) ' in err
    [outside] = [line for line in out.splitlines() if 'Outside' in line]
    assert not outside.startswith('[I] (')


def test_formatting(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    """Messages are formatted with str.format(), and only if arguments are passed."""
    setup_logging(monkeypatch)
    log = get_logger('bsptools.test', alias='custom')
    log.info('{} and {name}', 'positional', name='keyword')
    log.info('{braces} left alone')
    log.info('Percent %s untouched', 'x')

    out, err = capsys.readouterr()
    assert 'positional and keyword' in out
    assert '{braces} left alone' in out
    assert 'Percent %s untouched' in out
    assert ' custom.test_formatting(): ' in out


def test_logger_names() -> None:
    """Loggers are always placed under the package namespace."""
    assert get_logger('bsptools.lump').name == 'bsptools.lump'
    assert get_logger('tools').name == 'bsptools.tools'
    assert get_logger().name == 'bsptools'
