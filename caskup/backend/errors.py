class CaskError(Exception):
    '''Base class for everything caskup reports to the user.'''


class ManifestError(CaskError):
    pass


class CatalogError(CaskError):
    pass


class UnsupportedOS(CaskError):
    def __init__(self, name, required, actual) -> None:
        self.name = name
        self.required = required
        self.actual = actual
        super().__init__("%s requires macOS %s or newer, running %s" % (name, required, actual))


class UnsupportedArchitecture(CaskError):
    def __init__(self, name, arch, supported) -> None:
        self.name = name
        self.arch = arch
        self.supported = tuple(supported)
        super().__init__("%s is not available for architecture %s (supported: %s)"
                         % (name, arch, ", ".join(self.supported) or "none"))


class ChecksumMismatch(CaskError):
    def __init__(self, url, expected, actual) -> None:
        self.url = url
        self.expected = expected
        self.actual = actual
        super().__init__("Checksum mismatch for %s: expected %s, got %s" % (url, expected, actual))


class NetworkFailure(CaskError):
    pass


class InstallationFailed(CaskError):
    pass


class PostflightCommandFailed(CaskError):
    pass


class LivecheckError(CaskError):
    pass
