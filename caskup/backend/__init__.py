from .backend import InstallerBackend, InstallResult
from .errors import CaskError
from .manifest import Manifest, load_manifest
from .resolver import ResolvedInstall, resolve
