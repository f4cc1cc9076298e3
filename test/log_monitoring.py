import queue
import re
import select
from subprocess import Popen
import threading
from typing import List

BAD_LOGS_PATTERNS = [re.compile("^warning", re.IGNORECASE),
                     re.compile("^error", re.IGNORECASE),
                     re.compile("^traceback", re.IGNORECASE)]

class LogMonitor(threading.Thread):
    def __init__(self, process: Popen,
                 allowed_log_lines: List[re.Pattern] | None=None):
        super().__init__(daemon=True)
        self._process = process
        self._log_queue = queue.Queue()
        if allowed_log_lines is not None:
            self._allowed_log_lines = allowed_log_lines
        else:
            self._allowed_log_lines = []
        self._bad_log_lines = []
        self._interrupted = False

    def run(self) -> None:
        while not self._interrupted:
            ready = select.select([self._process.stdout], [], [], 0.1)[0]
            if not ready:
                continue
            line = self._process.stdout.readline()
            if line == b'':
                # The process closed its end of the pipe
                break
            self._log_queue.put(line.decode("utf-8", errors="replace").rstrip("\n"))

    def interrupt(self) -> None:
        self._interrupted = True

    def _check_for_a_bad_log(self, line: str) -> bool:
        """ Returns True iff the log line matches any of the BAD_LOGS_PATTERNS and none of the
            allowed log lines """
        if any(pattern.match(line) is not None for pattern in self._allowed_log_lines):
            return False
        return any(pattern.match(line) is not None for pattern in BAD_LOGS_PATTERNS)

    def assert_no_bad_logs(self) -> None:
        """ Verifies that there are no warning or error log messages"""
        while not self._log_queue.empty():
            line = self._log_queue.get_nowait()
            if self._check_for_a_bad_log(line):
                self._bad_log_lines.append(line)
        if len(self._bad_log_lines) > 0:
            raise AssertionError(f"Found bad log lines: {str(self._bad_log_lines)}")

    def assert_log(self, message_pattern: str, timeout: float=10) -> str:
        """ Consumes log lines until one matches `message_pattern`, and returns it """
        pattern = re.compile(message_pattern)
        while True:
            try:
                line = self._log_queue.get(block=True, timeout=timeout)
            except queue.Empty as e:
                raise AssertionError(f"Cannot find log message matching `{message_pattern}`") from e
            if self._check_for_a_bad_log(line):
                self._bad_log_lines.append(line)
            if pattern.match(line) is not None:
                return line
