class ProgressReportInterface:
    '''
    A context manager counting work done, in whatever unit the caller picked.
    '''
    def __init__(self, title, total=None, unit=None, leave=True) -> None:
        pass
    def __enter__(self):
        raise NotImplementedError()
    def __exit__(self, exception_type, exception_value, exception_traceback):
        raise NotImplementedError()
    def update(self, count=1):
        raise NotImplementedError()

class Frontend:
    def notify(self, notice):
        raise NotImplementedError()
    def warn(self, warning):
        raise NotImplementedError()
    def output(self, text):
        raise NotImplementedError()
    def fatal(self, error):
        raise NotImplementedError()
    def pause(self):
        raise NotImplementedError()
    def progress(self, title, total=None, unit=None, leave=True) -> ProgressReportInterface:
        raise NotImplementedError()
