"""
Observer interface for conversion jobs.

A job reports everything it does through one ``ConversionListener``.  All
callbacks run synchronously on the thread that called ``ConversionJob.run``,
in pipeline order.  Every method is a no-op by default so front ends only
override what they display.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional, Sequence

_log = logging.getLogger(__name__)

REPLACE_TOKEN = "<replace>"


class ConversionListener:
    def log(self, text: str):
        pass

    def set_status(self, text: str):
        pass

    def report_progress(self, percent: int):
        pass

    def report_error(self, text: str):
        pass

    def request_confirm_dialog(self, text: str):
        pass

    def request_confirm_dialog_titled(self, title: str, text: str):
        pass

    def request_confirm_dialog_with_replacement(
        self, title: str, text: str, replacement_text: str
    ):
        pass

    def on_finished(self):
        pass

    def request_install_external_patch(self, executable: str, flags: Sequence[str]):
        """Ask the host to launch ``executable`` with ``flags``.

        ``flags`` is only valid for the duration of the call; copy it to keep it.
        """


class CallbackListener(ConversionListener):
    """Adapts plain callables to the listener interface; missing ones are ignored."""

    def __init__(
        self,
        *,
        on_log: Optional[Callable[[str], None]] = None,
        on_status: Optional[Callable[[str], None]] = None,
        on_progress: Optional[Callable[[int], None]] = None,
        on_error: Optional[Callable[[str], None]] = None,
        on_dialog: Optional[Callable[[str], None]] = None,
        on_dialog_titled: Optional[Callable[[str, str], None]] = None,
        on_dialog_replace: Optional[Callable[[str, str, str], None]] = None,
        on_finished: Optional[Callable[[], None]] = None,
        on_install_patch: Optional[Callable[[str, list[str]], None]] = None,
    ):
        self._on_log = on_log
        self._on_status = on_status
        self._on_progress = on_progress
        self._on_error = on_error
        self._on_dialog = on_dialog
        self._on_dialog_titled = on_dialog_titled
        self._on_dialog_replace = on_dialog_replace
        self._on_finished = on_finished
        self._on_install_patch = on_install_patch

    def log(self, text: str):
        if self._on_log:
            self._on_log(text)

    def set_status(self, text: str):
        if self._on_status:
            self._on_status(text)

    def report_progress(self, percent: int):
        if self._on_progress:
            self._on_progress(percent)

    def report_error(self, text: str):
        if self._on_error:
            self._on_error(text)

    def request_confirm_dialog(self, text: str):
        if self._on_dialog:
            self._on_dialog(text)

    def request_confirm_dialog_titled(self, title: str, text: str):
        if self._on_dialog_titled:
            self._on_dialog_titled(title, text)

    def request_confirm_dialog_with_replacement(
        self, title: str, text: str, replacement_text: str
    ):
        if self._on_dialog_replace:
            self._on_dialog_replace(title, text, replacement_text)

    def on_finished(self):
        if self._on_finished:
            self._on_finished()

    def request_install_external_patch(self, executable: str, flags: Sequence[str]):
        if self._on_install_patch:
            self._on_install_patch(executable, list(flags))


class LoggingListener(ConversionListener):
    """Writes every event to a ``logging.Logger``; useful for headless runs."""

    def __init__(self, logger: logging.Logger | None = None):
        self.logger = logger or _log

    def log(self, text: str):
        self.logger.info("%s", text)

    def set_status(self, text: str):
        self.logger.info("== %s", text)

    def report_progress(self, percent: int):
        self.logger.debug("progress %d%%", percent)

    def report_error(self, text: str):
        self.logger.error("%s", text)

    def request_confirm_dialog(self, text: str):
        self.logger.warning("%s", text)

    def request_confirm_dialog_titled(self, title: str, text: str):
        self.logger.warning("%s: %s", title, text)

    def request_confirm_dialog_with_replacement(
        self, title: str, text: str, replacement_text: str
    ):
        self.logger.warning("%s: %s", title, text.replace(REPLACE_TOKEN, replacement_text))

    def on_finished(self):
        self.logger.info("Conversion finished")

    def request_install_external_patch(self, executable: str, flags: Sequence[str]):
        self.logger.info("UserPatch install requested: %s %s", executable, " ".join(flags))
