import logging
import sys


logger = logging.getLogger("domctl")

LOG_FORMAT = "%(asctime)s %(name)s %(levelname)-5s| %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def configure_logging(debug=False, stream=None):
    """
    Send the orchestrator's log records to stream (stderr by default).

    Calling it again replaces the handler installed the previous time.
    After daemonizing stderr is the daemon log file, so the default
    handler follows it there.

    :param debug: Also show DEBUG records.
    :param stream: File-like object to write to.
    :return: the installed handler.
    """
    for handler in list(logger.handlers):
        if getattr(handler, "_domctl_handler", False):
            logger.removeHandler(handler)
    if stream is None:
        stream = sys.stderr
    handler = logging.StreamHandler(stream)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT))
    handler._domctl_handler = True
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if debug else logging.INFO)
    return handler


class LoggingFile(object):

    """
    File-like object that will receive messages pass them to the logging
    infrastructure in an appropriate way.
    """

    def __init__(self, prefix='', level=logging.DEBUG, logger=logger):
        """
        :param prefix - The prefix for each line logged by this object.
        """
        self._prefix = prefix
        self._level = level
        self._buffer = []
        self._logger = logger

    def write(self, data):
        """"
        Writes data only if it constitutes a whole line. If it's not the case,
        store it in a buffer and wait until we have a complete line.
        :param data - Raw data (a string) that will be processed.
        """
        # splitlines() discards a trailing blank line, so use split() instead
        data_lines = data.split('\n')
        if len(data_lines) > 1:
            self._buffer.append(data_lines[0])
            self._flush_buffer()
        for line in data_lines[1:-1]:
            self._log_line(line)
        if data_lines[-1]:
            self._buffer.append(data_lines[-1])
        return len(data)

    def writelines(self, lines):
        for data in lines:
            self.write(data)

    def _log_line(self, line):
        self._logger.log(self._level, self._prefix + line)

    def _flush_buffer(self):
        if self._buffer:
            self._log_line(''.join(self._buffer))
            self._buffer = []

    def flush(self):
        self._flush_buffer()

    def isatty(self):
        return False
