import logging
import sys
from tqdm import tqdm
from .frontend import Frontend, ProgressReportInterface


logger = logging.getLogger(__name__)

class TUIProgressReport(ProgressReportInterface):
    _tqdm: tqdm
    def __init__(self, title, total=None, unit=None, leave=True, disable=False) -> None:
        self._tqdm = tqdm(desc=title, total=total, unit=unit if unit else "it", leave=leave, disable=disable)
    def __enter__(self):
        self._tqdm.reset(total=self._tqdm.total)
        self._tqdm.refresh()
        return self
    def __exit__(self, exception_type, exception_value, exception_traceback):
        self._tqdm.close()
    def update(self, count=1):
        self._tqdm.update(count)

class TUIFrontend(Frontend):
    def __init__(self, nopause=True, quiet=False) -> None:
        super().__init__()
        self._nopause = nopause
        self._quiet = quiet
    def notify(self, notice):
        logger.info(notice)
    def warn(self, warning):
        logger.warning(warning)
    def output(self, text):
        tqdm.write(text, file=sys.stdout)
    def fatal(self, error):
        logger.fatal(error)
        self.pause()
        sys.exit(1)
    def pause(self):
        if not self._nopause:
            input("Press ENTER to continue...")
    def progress(self, title, total=None, unit=None, leave=True):
        return TUIProgressReport(title, total=total, unit=unit, leave=leave, disable=self._quiet)
