from .frontend import Frontend, ProgressReportInterface
from .tui import TUIFrontend
