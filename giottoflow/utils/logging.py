import logging
import sys
import datetime
from pathlib import Path

# analysis stack reported at the start of every run
STACK_PACKAGES = ['numpy', 'pandas', 'scipy', 'scikit-learn', 'statsmodels', 'anndata', 'scanpy', 'squidpy',
                  'igraph', 'matplotlib']

def setup_logging(level="INFO", log_file=None, log_format=None, capture_warnings=True):
    """
    Configure the 'giottoflow' logger hierarchy

    Every module logs to `giottoflow.<subpackage>.<module>`, so the handlers
    set here receive the messages of all stages.

    Parameters
    ----------
    level : str, optional
        Logging level. Options: 'DEBUG', 'INFO', 'WARNING', 'ERROR'
    log_file : str or Path, optional
        Additional log file. If None, logs only to the console
    log_format : str, optional
        Format string for log messages
    capture_warnings : bool, optional
        Route library warnings (anndata, scanpy) into the log

    Returns
    -------
    logging.Logger
        The 'giottoflow' logger
    """
    numeric_level = getattr(logging, level.upper(), None)
    if not isinstance(numeric_level, int):
        raise ValueError(f"Invalid log level: {level}")
    logger = logging.getLogger('giottoflow')
    logger.setLevel(numeric_level)
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()
    formatter = logging.Formatter(log_format or '%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file is not None:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path))
    for handler in handlers:
        handler.setLevel(numeric_level)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    if capture_warnings:
        logging.captureWarnings(True)
        py_warnings = logging.getLogger('py.warnings')
        for handler in handlers:
            py_warnings.addHandler(handler)

    if log_file is not None:
        logger.info(f"Logging to file: {log_file}")
    logger.debug(f"Logging level set to {level}")
    return logger

def log_execution_time(logger, start_time=None):
    """
    Start a timer whose end call logs and returns the elapsed seconds

    Returns
    -------
    function
        `log_end(message)` to call at the end of the timed block
    """
    if start_time is None:
        start_time = datetime.datetime.now()

    def log_end(message="Execution completed"):
        seconds = (datetime.datetime.now() - start_time).total_seconds()
        minutes, rest = divmod(seconds, 60)
        if minutes >= 1:
            logger.info(f"{message} in {int(minutes)}m {rest:.2f}s")
        else:
            logger.info(f"{message} in {seconds:.2f}s")
        return seconds

    return log_end

def log_system_info(logger):
    """Log the interpreter, platform and versions of the analysis stack"""
    import platform
    import os
    from importlib.metadata import version, PackageNotFoundError

    logger.info(f"Python {platform.python_version()} on {platform.system()} {platform.release()}, "
                f"{os.cpu_count()} CPU cores")
    versions = []
    for package in STACK_PACKAGES:
        try:
            versions.append(f"{package} {version(package)}")
        except PackageNotFoundError:
            versions.append(f"{package} (not installed)")
    logger.info(f"Package versions: {', '.join(versions)}")
