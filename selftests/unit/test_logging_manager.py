#!/usr/bin/python

import io
import logging
import os
import sys
import unittest

# simple magic for using scripts within a source tree
basedir = os.path.dirname(os.path.dirname(os.path.dirname(
    os.path.abspath(__file__))))
if os.path.isdir(os.path.join(basedir, 'domctl')):
    sys.path.append(basedir)

from domctl import logging_manager


class ConfigureLoggingTest(unittest.TestCase):

    def tearDown(self):
        for handler in list(logging_manager.logger.handlers):
            if getattr(handler, "_domctl_handler", False):
                logging_manager.logger.removeHandler(handler)

    def test_handler_replaced(self):
        first = io.StringIO()
        second = io.StringIO()
        logging_manager.configure_logging(stream=first)
        logging_manager.configure_logging(debug=True, stream=second)
        log = logging.getLogger("domctl.lifecycle")
        log.debug("domain %d started", 5)
        self.assertEqual(first.getvalue(), "")
        self.assertIn("domctl.lifecycle DEBUG| domain 5 started",
                      second.getvalue())

    def test_info_level(self):
        stream = io.StringIO()
        logging_manager.configure_logging(stream=stream)
        logging.getLogger("domctl.save").debug("hidden")
        self.assertEqual(stream.getvalue(), "")
        self.assertEqual(logging_manager.logger.level, logging.INFO)


class LoggingFileTest(unittest.TestCase):

    def test_lines(self):
        log = logging.getLogger("domctl.test")
        log_file = logging_manager.LoggingFile(prefix="> ",
                                               level=logging.ERROR,
                                               logger=log)
        with self.assertLogs("domctl.test", "ERROR") as logs:
            self.assertEqual(log_file.write("one\ntw"), 6)
            log_file.write("o\nthree")
            log_file.flush()
        self.assertEqual([record.getMessage() for record in logs.records],
                         ["> one", "> two", "> three"])
        self.assertFalse(log_file.isatty())


if __name__ == '__main__':
    unittest.main()
