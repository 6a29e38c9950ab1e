import sys
from pathlib import Path
from typing import Iterable, List

from loguru import logger

from tx_helper.utils.models.settings_model import LoggingConfig


FORMAT = '{time:MMMM D, YYYY > HH:mm:ss!UTC} | {level} | {extra[library]}.{extra[module]} | {message}'

# every record emitted by tx_helper carries extra['library'] == 'tx_helper'
_tx_logger = logger.bind(library='tx_helper')

# sinks added by configure_tx_logging that write to files
_file_handler_ids: List[int] = []


def create_level_filter(*levels):
    """
    Build a loguru filter that only lets records of the given levels through,
    and only records emitted by this library.

    Args:
        *levels (str): Level names, e.g. 'DEBUG', 'TRACE'.

    Returns:
        Callable: Filter usable with `logger.add(filter=...)`.
    """
    wanted = set(levels)

    def level_filter(record):
        return record['level'].name in wanted and record['extra'].get('library') == 'tx_helper'
    return level_filter


def get_logger(module_name: str = 'TxHelper'):
    """
    Logger bound to one tx_helper component.

    Nothing is configured here; records go wherever the host application
    (or `configure_tx_logging`) sends them.
    """
    return _tx_logger.bind(module=module_name)


def configure_tx_logging(config: LoggingConfig) -> List[int]:
    """
    Adds tx_helper sinks described by `config`.

    File sinks get one file per enabled level under `config.log_dir`, console
    sinks one stream per entry of `config.console_levels`. Handlers of the host
    application are left alone.

    Args:
        config (LoggingConfig): Sinks to add.

    Returns:
        list: Ids of the added handlers, for `remove_tx_handlers`.
    """
    handler_ids = []
    if config.log_dir is not None:
        log_dir = Path(config.log_dir).expanduser().resolve()
        log_dir.mkdir(parents=True, exist_ok=True, mode=0o755)

        for level in (name for name, enabled in config.file_levels.items() if enabled):
            handler_id = _tx_logger.add(
                str(log_dir / f'{level.lower()}.log'),
                level=level,
                format=config.format,
                filter=create_level_filter(level),
                rotation=config.rotation,
                retention=config.retention,
                compression=config.compression,
                backtrace=True,
                diagnose=True,
            )
            _file_handler_ids.append(handler_id)
            handler_ids.append(handler_id)

    if config.enable_console_logging:
        for level, stream_name in config.console_levels.items():
            handler_ids.append(
                _tx_logger.add(
                    sys.stdout if stream_name == 'stdout' else sys.stderr,
                    level=level,
                    format=config.format,
                    filter=create_level_filter(level),
                    colorize=True,
                ),
            )
    return handler_ids


def remove_tx_handlers(handler_ids: Iterable[int]):
    """Removes handlers previously added by this module. Unknown ids are ignored."""
    for handler_id in list(handler_ids):
        if handler_id in _file_handler_ids:
            _file_handler_ids.remove(handler_id)
        try:
            _tx_logger.remove(handler_id)
        except ValueError:
            # removed elsewhere, e.g. by logger.remove()
            continue


def disable_tx_file_logging():
    """Removes every file sink added by `configure_tx_logging`."""
    remove_tx_handlers(list(_file_handler_ids))


def enable_debug_logging(sink=None) -> int:
    """
    Mirrors tx_helper DEBUG and TRACE records to stdout (or `sink`).

    Returns:
        int: Handler id, for `remove_tx_handlers`.
    """
    return _tx_logger.add(
        sink or sys.stdout,
        level='TRACE',
        format=FORMAT,
        filter=create_level_filter('DEBUG', 'TRACE'),
        colorize=sink is None,
    )
