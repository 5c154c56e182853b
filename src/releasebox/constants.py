"""Shared constants for releasebox."""

DIR_MODE = 0o755
FILE_MODE = 0o644
SCRIPT_MODE = 0o755

DEFAULT_WORKDIR = "/workspace"
DEFAULT_ENTRYPOINT = "release"
DEFAULT_ENTRYPOINT_PATH = "/usr/local/bin/release"
OUTPUT_MOUNT_DIRNAME = "dist"

DEFAULT_CONFIG_FILE = ".releasebox.yml"
DEFAULT_MANIFEST_FILE = "toolchain.yml"
RELEASE_MANIFEST_FILE = "release-manifest.json"
CHECKSUMS_FILE = "SHA256SUMS"

SOURCE_ARCHIVE_EXTENSIONS = (".zip", ".tar.gz", ".tgz")

UNPINNED_MARKERS = ("", "latest", "*")
FLOATING_CHANNELS = ("stable", "beta", "nightly")

# family -> package manager, supported versions
SUPPORTED_BASES = {
    "centos": ("yum", ("7",)),
    "rockylinux": ("dnf", ("8", "9")),
    "almalinux": ("dnf", ("8", "9")),
    "debian": ("apt-get", ("11", "12")),
    "ubuntu": ("apt-get", ("20.04", "22.04", "24.04")),
}

FETCH_TOOLS = ("curl", "wget")

# docker run: daemon error, command not executable, command not found
LAUNCH_FAILURE_CODES = (125, 126, 127)

LABEL_PREFIX = "io.releasebox"

TOOLCHAIN_FINGERPRINT_ENV = "RELEASEBOX_TOOLCHAIN_FINGERPRINT"

# pip tool sources are copied here before they are installed
PIP_SOURCE_DIR = "/tmp/releasebox-pip"
