#!/usr/bin/env python3
"""pluginpack - sign, notarize and package macOS audio plugin bundles.

This module provides tools for:
1. Checking whether a VST3, AudioUnit or Standalone App bundle is already
   signed and notarized
2. Inside-out Developer ID signing with the hardened runtime
3. Notarizing and stapling bundles through Apple's notary service
4. Optionally building a signed and notarized drag-and-drop disk image

Every step delegates to Apple's command-line tools (codesign, ditto,
notarytool, stapler, hdiutil). Each bundle goes through the same state
progression:

    UNSIGNED -> SIGNED -> NOTARIZED -> STAPLED

with an ALREADY_COMPLETE shortcut when both checks already pass. The disk
image track has the same shape and only starts once its bundle is stapled.

Usage (CLI):
    # Sign and notarize, then ask whether to build disk images
    pluginpack MyPlugin.vst3 MyPlugin.component MyPlugin.app

    # Non-interactive, also build disk images
    pluginpack --dmg MyPlugin.vst3

Usage (API):
    from pluginpack import Credentials, process_inputs

    credentials = Credentials.from_env()
    credentials.validate()
    results = process_inputs(["MyPlugin.vst3"], credentials, create_dmg=True)
"""

import argparse
import datetime
import enum
import itertools
import json
import logging
import math
import os
import re
import shutil
import struct
import subprocess
import sys
import tempfile
import threading
import time
from pathlib import Path

from dotenv import load_dotenv
from macholib.mach_o import CPU_TYPE_NAMES
from macholib.MachO import MachO

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

# ----------------------------------------------------------------------------
# Constants

__version__ = "0.1.0"

# Type aliases
Pathlike = Path | str

# Environment variable names
ENV_CERT_NAME = "AppleCertName"
ENV_KEYCHAIN_PROFILE = "NotarizationKeychainProfileName"
ENV_TRACE = "TRACE"

# Config files searched in the current directory
CONFIG_FILENAMES = [".pluginpack.toml", "pluginpack.toml"]

# Nested library directory signed before the outer bundle
FRAMEWORKS_DIR = Path("Contents") / "Frameworks"

# Printed by `stapler validate` when a valid ticket is attached
STAPLER_VALID_MARKER = "The validate action worked"

# Accepted verdict reported by `notarytool submit --wait`
NOTARY_ACCEPTED = "Accepted"

# Headroom added to the staged size so hdiutil never runs out of space
DMG_PADDING_MB = 50

BYTES_PER_MB = 1024 * 1024

# "Name", "Name (TEAMID)", "Developer ID Application: Name (TEAMID)" or a
# 40 character SHA-1 certificate hash
IDENTITY_PATTERN = re.compile(
    r"^(?:[0-9A-Fa-f]{40}"
    r"|(?:[A-Za-z][A-Za-z ]*:\s+)?"
    r"[A-Za-z][A-Za-z0-9\s\.\-\,\']+(?:\s+\([A-Z0-9]{10}\))?)$"
)


class PluginFormat(enum.Enum):
    """Recognized bundle formats and where each one installs."""

    VST3 = (
        "VST3",
        ".vst3",
        "/Library/Audio/Plug-Ins/VST3",
        "Install to VST3 folder",
    )
    AUDIO_UNIT = (
        "AudioUnit",
        ".component",
        "/Library/Audio/Plug-Ins/Components",
        "Install to Components folder",
    )
    STANDALONE = (
        "Standalone App",
        ".app",
        "/Applications",
        "Install to Applications",
    )

    def __init__(
        self, label: str, suffix: str, install_dir: str, link_name: str
    ):
        self.label = label
        self.suffix = suffix
        self.install_dir = Path(install_dir)
        self.link_name = link_name

    @property
    def slug(self) -> str:
        """Lowercase name usable in temporary file names."""
        return self.label.lower().replace(" ", "_")

    @classmethod
    def from_path(cls, path: Pathlike) -> "PluginFormat | None":
        """Return the format matching the bundle suffix, if any."""
        suffix = Path(path).suffix.lower()
        for fmt in cls:
            if fmt.suffix == suffix:
                return fmt
        return None


class Stage(enum.Enum):
    """Progress of a bundle or disk image through signing."""

    UNSIGNED = "unsigned"
    SIGNED = "signed"
    NOTARIZED = "notarized"
    STAPLED = "stapled"
    ALREADY_COMPLETE = "already complete"

    @property
    def is_final(self) -> bool:
        return self in (Stage.STAPLED, Stage.ALREADY_COMPLETE)


# ----------------------------------------------------------------------------
# Configuration file support


def load_config(config_path: Path | None = None) -> dict[str, object]:
    """Load configuration from a TOML file.

    Searches for configuration in the following order:
    1. Explicit config_path if provided
    2. .pluginpack.toml in current directory
    3. pluginpack.toml in current directory

    Args:
        config_path: Optional explicit path to config file

    Returns:
        Configuration dictionary (empty if no config found)

    Raises:
        ConfigurationError: If the file exists but is not valid TOML

    Example .pluginpack.toml:
        [credentials]
        cert_name = "Developer ID Application: John Doe (ABCDE12345)"
        keychain_profile = "AC_PROFILE"

        [sign]
        entitlements = "entitlements.plist"
    """
    if config_path is not None:
        if not config_path.exists():
            raise ConfigurationError(f"Config file not found: {config_path}")
        paths_to_try = [config_path]
    else:
        cwd = Path.cwd()
        paths_to_try = [cwd / name for name in CONFIG_FILENAMES]

    for path in paths_to_try:
        if path.exists():
            try:
                with open(path, "rb") as f:
                    data: dict[str, object] = tomllib.load(f)
            except tomllib.TOMLDecodeError as e:
                raise ConfigurationError(
                    f"Invalid config file {path}: {e}"
                ) from e
            return data

    return {}


def get_config_value(
    config: dict[str, object],
    section: str,
    key: str,
    default: str | None = None,
) -> str | None:
    """Get a string value from config with section.key lookup."""
    section_config = config.get(section, {})
    if not isinstance(section_config, dict):
        return default
    value = section_config.get(key, default)
    if value is None or isinstance(value, str):
        return value
    return default


# ----------------------------------------------------------------------------
# Error handling


class PluginPackError(Exception):
    """Base exception class for pluginpack errors."""


class CommandError(PluginPackError):
    """Exception raised when an external tool exits non-zero."""

    def __init__(
        self,
        command: str,
        returncode: int,
        output: str | None = None,
        description: str | None = None,
    ):
        self.command = command
        self.returncode = returncode
        self.output = output
        self.description = description
        if description:
            message = f"{description} failed with status {returncode}"
        else:
            message = f"Command '{command}' failed with status {returncode}"
        super().__init__(message)


class ConfigurationError(PluginPackError):
    """Exception raised when credentials or settings are invalid."""


class ValidationError(PluginPackError):
    """Exception raised when an input bundle is not usable."""


class CodesignError(PluginPackError):
    """Exception raised when codesigning fails."""


class NotarizationError(PluginPackError):
    """Exception raised when notarization or stapling fails."""


class PackagingError(PluginPackError):
    """Exception raised when disk image packaging fails."""


# ----------------------------------------------------------------------------
# Credentials


def validate_identity(identity: str) -> None:
    """Validate a codesign identity string.

    Accepted forms:
    - "John Doe" or "John Doe (ABCD123456)"
    - "Developer ID Application: John Doe (ABCD123456)"
    - a 40 character SHA-1 certificate hash

    Raises:
        ConfigurationError: If the identity is empty or malformed
    """
    if not identity or not identity.strip():
        raise ConfigurationError("Certificate identity cannot be empty")

    identity = identity.strip()
    if len(identity) > 200:
        raise ConfigurationError(
            f"Certificate identity is too long (max 200 characters): '{identity}'"
        )
    if not IDENTITY_PATTERN.match(identity):
        raise ConfigurationError(
            f"Certificate identity has invalid format: '{identity}'. "
            "Expected 'Developer ID Application: Name (TEAM_ID)' "
            "or a SHA-1 certificate hash"
        )


class Credentials:
    """Signing identity and notarization keychain profile.

    Built once at startup from the environment (falling back to the
    [credentials] config section) and validated before any bundle is
    touched.

    Args:
        cert_name: codesign identity passed to --sign
        keychain_profile: profile stored with `notarytool store-credentials`
    """

    def __init__(self, cert_name: str | None, keychain_profile: str | None):
        self.cert_name = cert_name.strip() if cert_name else None
        self.keychain_profile = (
            keychain_profile.strip() if keychain_profile else None
        )

    def __repr__(self) -> str:
        return (
            f"<Credentials cert_name={self.cert_name!r} "
            f"keychain_profile={self.keychain_profile!r}>"
        )

    @classmethod
    def from_env(
        cls,
        environ: dict[str, str] | None = None,
        config: dict[str, object] | None = None,
    ) -> "Credentials":
        """Read credentials from the environment, then the config file."""
        if environ is None:
            environ = dict(os.environ)
        config = config or {}
        cert_name = environ.get(ENV_CERT_NAME) or get_config_value(
            config, "credentials", "cert_name"
        )
        keychain_profile = environ.get(
            ENV_KEYCHAIN_PROFILE
        ) or get_config_value(config, "credentials", "keychain_profile")
        return cls(cert_name, keychain_profile)

    def missing(self) -> list[str]:
        """Names of the environment variables that are still unset."""
        names = []
        if not self.cert_name:
            names.append(ENV_CERT_NAME)
        if not self.keychain_profile:
            names.append(ENV_KEYCHAIN_PROFILE)
        return names

    def validate(self) -> None:
        """Check that both credentials are present and well formed.

        Raises:
            ConfigurationError: If anything is missing or malformed
        """
        missing = self.missing()
        if missing:
            raise ConfigurationError(
                f"Missing required environment variable(s): {', '.join(missing)}"
            )
        validate_identity(self.cert_name)


# ----------------------------------------------------------------------------
# Progress indicator


class ProgressSpinner:
    """Terminal spinner shown while blocking on the notary service.

    Does nothing when the stream is not a terminal, so logs and captured
    output stay clean.

    Example:
        with ProgressSpinner("Waiting for notarization"):
            submit()
    """

    SPINNER_CHARS = ["|", "/", "-", "\\"]

    def __init__(self, message: str = "", stream=None):
        self.message = message
        self.stream = stream or sys.stdout
        self.enabled = self.stream.isatty()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def _spin(self) -> None:
        spinner = itertools.cycle(self.SPINNER_CHARS)
        while not self._stop_event.is_set():
            self.stream.write(f"\r{self.message} {next(spinner)} ")
            self.stream.flush()
            time.sleep(0.1)
        self.stream.write(f"\r{self.message} done\n")
        self.stream.flush()

    def start(self) -> None:
        if not self.enabled:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._spin, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=1.0)
            self._thread = None

    def __enter__(self) -> "ProgressSpinner":
        self.start()
        return self

    def __exit__(self, *args: object) -> None:
        self.stop()


# ----------------------------------------------------------------------------
# Logging configuration

# Between INFO and WARNING: a step finished successfully
SUCCESS = 25
logging.addLevelName(SUCCESS, "SUCCESS")


class CustomFormatter(logging.Formatter):
    """Status-line formatter: one colored glyph per level."""

    class color:
        """Text colors for terminal output."""

        grey = "\x1b[38;20m"
        blue = "\x1b[34;20m"
        green = "\x1b[32;20m"
        yellow = "\x1b[33;20m"
        red = "\x1b[31;20m"
        bold_red = "\x1b[31;1m"
        reset = "\x1b[0m"

    GLYPHS = {
        logging.DEBUG: "$",
        logging.INFO: "→",
        SUCCESS: "✓",
        logging.WARNING: "⚠",
        logging.ERROR: "✗",
        logging.CRITICAL: "✗",
    }

    COLORS = {
        logging.DEBUG: color.grey,
        logging.INFO: color.blue,
        SUCCESS: color.green,
        logging.WARNING: color.yellow,
        logging.ERROR: color.red,
        logging.CRITICAL: color.bold_red,
    }

    def __init__(self, use_color: bool = True, detailed: bool = False):
        self.use_color = use_color
        self.detailed = detailed
        super().__init__("%(message)s")

    def format(self, record: logging.LogRecord) -> str:
        """Format the record as `<glyph> <message>`, colored if enabled."""
        message = super().format(record)
        if self.detailed:
            duration = datetime.datetime.fromtimestamp(
                record.relativeCreated / 1000, datetime.timezone.utc
            )
            message = (
                f"{duration.strftime('%H:%M:%S')} "
                f"{record.name}.{record.funcName} - {message}"
            )
        line = f"{self.GLYPHS.get(record.levelno, '-')} {message}"
        if not self.use_color:
            return line
        color = self.COLORS.get(record.levelno, self.color.reset)
        return f"{color}{line}{self.color.reset}"


def setup_logging(debug: bool = False, use_color: bool = True) -> None:
    """Configure logging for the application.

    Args:
        debug: Trace every executed command
        use_color: Whether to use colored output
    """
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(CustomFormatter(use_color, detailed=debug))
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        handlers=[stream_handler],
    )


# ----------------------------------------------------------------------------
# Command execution utilities


def run_command(
    command: list[str],
    description: str | None = None,
    dry_run: bool = False,
    log: logging.Logger | None = None,
) -> str:
    """Run a command and return its output.

    The description is logged before the command runs and names the step
    in the CommandError if it fails. Uses shell=False.

    Args:
        command: The command as a list of arguments
        description: Human readable name of the step
        dry_run: If True, log command but don't execute (default: False)
        log: Optional logger for step/trace/dry-run output

    Returns:
        The command stdout output

    Raises:
        CommandError: If the command cannot be started or exits non-zero
    """
    cmd_str = " ".join(command)
    if log:
        if description:
            log.info("%s", description)
        log.debug("%s", cmd_str)
    if dry_run:
        if log:
            log.info("[DRY RUN] %s", cmd_str)
        return ""
    try:
        result = subprocess.run(
            command, shell=False, check=False, text=True, capture_output=True
        )
    except FileNotFoundError as e:
        raise CommandError(cmd_str, 127, str(e), description) from e
    if result.returncode != 0:
        raise CommandError(
            cmd_str,
            result.returncode,
            result.stderr or result.stdout,
            description,
        )
    return result.stdout


def probe(
    command: list[str],
    expect: str | None = None,
    log: logging.Logger | None = None,
) -> bool:
    """Run a read-only check and report whether it passed.

    Passing means exit status 0 and, if `expect` is given, that string
    appearing in stdout. A missing tool counts as a failed check.
    """
    if log:
        log.debug("%s", " ".join(command))
    try:
        result = subprocess.run(
            command, shell=False, check=False, text=True, capture_output=True
        )
    except FileNotFoundError:
        return False
    if result.returncode != 0:
        return False
    if expect is None:
        return True
    return expect in result.stdout


# ----------------------------------------------------------------------------
# Status checks


def is_signed(path: Pathlike, log: logging.Logger | None = None) -> bool:
    """Check whether path passes strict deep signature verification."""
    return probe(
        ["codesign", "--verify", "--deep", "--strict", str(path)], log=log
    )


def is_notarized(path: Pathlike, log: logging.Logger | None = None) -> bool:
    """Check whether a notarization ticket is stapled to path and valid."""
    return probe(
        ["xcrun", "stapler", "validate", str(path)],
        expect=STAPLER_VALID_MARKER,
        log=log,
    )


class SigningStatus:
    """Result of the two advisory status probes."""

    def __init__(self, signed: bool, notarized: bool):
        self.signed = signed
        self.notarized = notarized

    @property
    def complete(self) -> bool:
        return self.signed and self.notarized

    def __repr__(self) -> str:
        return (
            f"<SigningStatus signed={self.signed} notarized={self.notarized}>"
        )


def check_status(
    path: Pathlike, log: logging.Logger | None = None
) -> SigningStatus:
    """Probe signature and notarization state of a bundle or image."""
    log = log or logging.getLogger("pluginpack")
    signed = is_signed(path, log)
    if signed:
        log.log(SUCCESS, "%s is already code signed", Path(path).name)
    else:
        log.warning("%s is not signed", Path(path).name)

    notarized = is_notarized(path, log)
    if notarized:
        log.log(SUCCESS, "%s is already notarized and stapled", Path(path).name)
    else:
        log.warning("%s is not notarized", Path(path).name)

    return SigningStatus(signed, notarized)


# ----------------------------------------------------------------------------
# Input and binary inspection


def resolve_input(path: Pathlike) -> PluginFormat:
    """Validate a command-line bundle path and return its format.

    Raises:
        ValidationError: If the path is missing, not a directory or has an
            unrecognized suffix
    """
    path = Path(path)
    if not path.exists():
        raise ValidationError(f"{path} (bundle not found)")
    if not path.is_dir():
        raise ValidationError(f"{path} (not a directory)")
    fmt = PluginFormat.from_path(path)
    if fmt is None:
        raise ValidationError(
            f"{path} (not a VST3, Component, or App bundle)"
        )
    return fmt


def get_architectures(path: Pathlike) -> list[str]:
    """Get the architectures of a Mach-O binary using macholib.

    Returns:
        Lowercase architecture names (e.g. ["x86_64", "arm64"]); an empty
        list if the file is not a Mach-O binary
    """
    try:
        macho = MachO(str(path))
    except (ValueError, struct.error, OSError):
        return []
    archs = []
    for header in macho.headers:
        cputype = header.header.cputype
        archs.append(CPU_TYPE_NAMES.get(cputype, f"cpu{cputype}").lower())
    return archs


def directory_size_mb(path: Pathlike) -> int:
    """Apparent size of all regular files under path, in whole MB (rounded up).

    Symbolic links are not followed.
    """
    total = 0
    for root, _folders, files in os.walk(path):
        for fname in files:
            fpath = os.path.join(root, fname)
            if os.path.islink(fpath):
                continue
            total += os.lstat(fpath).st_size
    return math.ceil(total / BYTES_PER_MB)


def _timestamp() -> int:
    return int(time.time())


# ----------------------------------------------------------------------------
# Codesigning and notarization


class Codesigner:
    """Inside-out Developer ID signing of a plugin bundle.

    Dynamic libraries in Contents/Frameworks are signed one by one first,
    since the outer signature seals them, then the bundle itself is signed.
    Both always use the hardened runtime.

    Args:
        path: Path to the bundle to sign
        identity: codesign identity
        entitlements: Optional entitlements plist for the outer bundle
        dry_run: If True, only show what would be signed

    Example:
        signer = Codesigner("MyPlugin.vst3",
                            "Developer ID Application: John Doe (ABCDE12345)")
        signer.process()
    """

    def __init__(
        self,
        path: Pathlike,
        identity: str,
        entitlements: Pathlike | None = None,
        dry_run: bool = False,
    ) -> None:
        self.path = Path(path)
        self.identity = identity
        self.dry_run = dry_run
        self.log = logging.getLogger(self.__class__.__name__)

        self.entitlements: Path | None
        if entitlements:
            self.entitlements = Path(entitlements)
            if not self.entitlements.exists():
                raise ConfigurationError(
                    f"Entitlements file not found: {self.entitlements}"
                )
        else:
            self.entitlements = None

        self._cmd_codesign_base = [
            "codesign",
            "--force",
            "--verify",
            "--verbose",
            "--timestamp",
            "--options",
            "runtime",
        ]

    def run_command(self, command: list[str], description: str) -> str:
        """Run a command under this signer's dry-run setting.

        Args:
            command: The command as a list of arguments
            description: Step name logged before running

        Returns:
            The command stdout output

        Raises:
            CommandError: If the command fails
        """
        return run_command(
            command, description, dry_run=self.dry_run, log=self.log
        )

    def collect_dylibs(self) -> list[Path]:
        """Return the signable Mach-O libraries in Contents/Frameworks."""
        frameworks = self.path / FRAMEWORKS_DIR
        if not frameworks.is_dir():
            return []

        dylibs = []
        for candidate in sorted(frameworks.glob("*.dylib")):
            if candidate.is_symlink() or not candidate.is_file():
                continue
            archs = get_architectures(candidate)
            if not archs:
                self.log.warning(
                    "skipping %s: not a Mach-O binary", candidate.name
                )
                continue
            self.log.debug("found %s (%s)", candidate.name, ", ".join(archs))
            dylibs.append(candidate)
        return dylibs

    def sign_dylib(self, path: Path) -> None:
        """Sign a single nested dynamic library."""
        command = self._cmd_codesign_base + ["--sign", self.identity, str(path)]
        self.run_command(command, f"Signing {path.name}...")
        self.log.log(SUCCESS, "Signed: %s", path.name)

    def sign_bundle(self) -> None:
        """Sign the bundle itself, deep, with the hardened runtime."""
        command = ["codesign", "--deep"] + self._cmd_codesign_base[1:]
        if self.entitlements:
            command.extend(["--entitlements", str(self.entitlements)])
        command.extend(["--sign", self.identity, str(self.path)])
        self.run_command(
            command,
            f"Code signing {self.path.name} with cert: {self.identity}...",
        )

    def process(self) -> Stage:
        """Sign nested libraries, then the bundle.

        Raises:
            CodesignError: If any codesign invocation fails
        """
        try:
            dylibs = self.collect_dylibs()
            if dylibs:
                self.log.info(
                    "Found Frameworks directory, signing %d dylib(s) first...",
                    len(dylibs),
                )
            for dylib in dylibs:
                self.sign_dylib(dylib)
            self.sign_bundle()
        except CommandError as e:
            raise CodesignError(f"Signing failed for {self.path}: {e}") from e
        self.log.log(SUCCESS, "%s signed.", self.path.name)
        return Stage.SIGNED


class Notarizer:
    """Submits archives to Apple's notary service and staples tickets.

    Args:
        keychain_profile: Keychain profile for notarytool
        dry_run: If True, show commands without executing
    """

    def __init__(self, keychain_profile: str, dry_run: bool = False) -> None:
        self.keychain_profile = keychain_profile
        self.dry_run = dry_run
        self.log = logging.getLogger(self.__class__.__name__)

    def run_command(self, command: list[str], description: str) -> str:
        """Run a notarization command; see the module-level run_command()."""
        return run_command(
            command, description, dry_run=self.dry_run, log=self.log
        )

    def archive(self, bundle: Path, destination: Path) -> Path:
        """Zip a bundle for submission, keeping signatures and symlinks."""
        command = [
            "ditto",
            "-c",
            "-k",
            "--keepParent",
            str(bundle),
            str(destination),
        ]
        self.run_command(command, f"Zipping {bundle.name}...")
        return destination

    def submit(self, path: Path) -> str | None:
        """Submit path and block until the service returns a verdict.

        Returns:
            The submission id, if reported

        Raises:
            NotarizationError: If submission fails or is not accepted
        """
        command = [
            "xcrun",
            "notarytool",
            "submit",
            str(path),
            "--keychain-profile",
            self.keychain_profile,
            "--wait",
            "--output-format",
            "json",
        ]
        description = f"Submitting {path.name} for notarization..."
        try:
            with ProgressSpinner("Waiting for notarization"):
                output = self.run_command(command, description)
        except CommandError as e:
            raise NotarizationError(
                f"Notarization failed for {path}: {e}"
            ) from e

        if not output.strip():
            return None
        try:
            verdict = json.loads(output)
        except json.JSONDecodeError:
            self.log.warning("Unrecognized notarytool output: %s", output)
            return None

        submission_id = verdict.get("id")
        status = verdict.get("status")
        self.log.debug("submission %s: %s", submission_id, status)
        if status != NOTARY_ACCEPTED:
            raise NotarizationError(
                f"Notarization of {path} was not accepted "
                f"(status: {status}, id: {submission_id}). "
                f"Run `xcrun notarytool log {submission_id}` for details."
            )
        return submission_id

    def staple(self, path: Path) -> None:
        """Attach the notarization ticket to path."""
        command = ["xcrun", "stapler", "staple", str(path)]
        try:
            self.run_command(command, f"Stapling {path.name}...")
        except CommandError as e:
            raise NotarizationError(f"Stapling failed for {path}: {e}") from e


# ----------------------------------------------------------------------------
# Bundle and disk image tracks


class BundleProcessor:
    """Moves one bundle through UNSIGNED -> SIGNED -> NOTARIZED -> STAPLED.

    Args:
        path: Path to the bundle
        fmt: Bundle format
        credentials: Validated credentials
        entitlements: Optional entitlements plist
        dry_run: If True, show commands without executing
    """

    def __init__(
        self,
        path: Pathlike,
        fmt: PluginFormat,
        credentials: Credentials,
        entitlements: Pathlike | None = None,
        dry_run: bool = False,
    ) -> None:
        self.path = Path(path)
        self.format = fmt
        self.dry_run = dry_run
        self.log = logging.getLogger(self.__class__.__name__)
        credentials.validate()
        self.signer = Codesigner(
            self.path, credentials.cert_name, entitlements, dry_run
        )
        self.notarizer = Notarizer(credentials.keychain_profile, dry_run)
        self.stage = Stage.UNSIGNED

    def archive_path(self) -> Path:
        """Timestamped zip path for the notarization snapshot."""
        return Path(tempfile.gettempdir()) / (
            f"{self.format.slug}_bundle_{_timestamp()}.zip"
        )

    def check_status(self) -> SigningStatus:
        """Probe whether the bundle is already signed and stapled."""
        self.log.info(
            "Checking if %s bundle is already signed and notarized...",
            self.format.label,
        )
        return check_status(self.path, self.log)

    def sign(self) -> None:
        """Sign nested libraries and the bundle; advances to SIGNED."""
        self.stage = self.signer.process()

    def notarize(self) -> None:
        """Zip, submit and wait, then staple the ticket onto the bundle.

        The temporary archive is removed however the submission ends.
        """
        archive = self.archive_path()
        try:
            self.notarizer.archive(self.path, archive)
            self.notarizer.submit(archive)
            self.stage = Stage.NOTARIZED
        finally:
            archive.unlink(missing_ok=True)
        self.notarizer.staple(self.path)
        self.stage = Stage.STAPLED
        self.log.log(
            SUCCESS, "%s bundle signed and notarized.", self.format.label
        )

    def process(self) -> Stage:
        """Run whichever steps are still needed.

        Returns:
            STAPLED, or ALREADY_COMPLETE if nothing had to be done
        """
        status = self.check_status()
        if status.complete:
            self.log.log(
                SUCCESS,
                "%s bundle is already signed and notarized. Skipping...",
                self.format.label,
            )
            self.stage = Stage.ALREADY_COMPLETE
            return self.stage

        self.log.info(
            "Signing and notarizing %s bundle: %s", self.format.label, self.path
        )
        self.sign()
        self.notarize()
        return self.stage


class DiskImagePackager:
    """Builds, signs, notarizes and staples a drag-and-drop disk image.

    The image is written next to the bundle as <stem>.dmg. It contains a
    copy of the bundle and a symbolic link to the format's install folder.
    An existing image that is already signed and notarized is left alone.

    Args:
        bundle: Path to the (stapled) bundle
        fmt: Bundle format, selects the install folder link
        credentials: Validated credentials
        dry_run: If True, show commands without executing
        padding_mb: Free space added on top of the staged size

    Example:
        packager = DiskImagePackager("MyPlugin.vst3", PluginFormat.VST3,
                                     credentials)
        packager.process()
    """

    def __init__(
        self,
        bundle: Pathlike,
        fmt: PluginFormat,
        credentials: Credentials,
        dry_run: bool = False,
        padding_mb: int = DMG_PADDING_MB,
    ) -> None:
        self.bundle = Path(bundle)
        self.format = fmt
        credentials.validate()
        self.identity = credentials.cert_name
        self.dry_run = dry_run
        self.padding_mb = padding_mb
        self.log = logging.getLogger(self.__class__.__name__)
        self.notarizer = Notarizer(credentials.keychain_profile, dry_run)
        self.stage = Stage.UNSIGNED

        self.volume_name = self.bundle.stem
        self.output = self.bundle.parent / f"{self.bundle.stem}.dmg"

        stamp = _timestamp()
        tmp = Path(tempfile.gettempdir())
        self.staging_dir = tmp / f"{self.volume_name}_staging_{stamp}"
        self.temp_image = tmp / f"{self.volume_name}_temp_{stamp}.dmg"

    def run_command(self, command: list[str], description: str) -> str:
        """Run a packaging command; see the module-level run_command()."""
        return run_command(
            command, description, dry_run=self.dry_run, log=self.log
        )

    def existing_is_complete(self) -> bool:
        """Check a previously built image; remove it if incomplete."""
        if not self.output.exists():
            return False

        self.log.info("DMG already exists. Checking if signed and notarized...")
        if check_status(self.output, self.log).complete:
            return True

        self.log.warning(
            "Existing DMG is not fully signed/notarized. Recreating..."
        )
        if not self.dry_run:
            try:
                self.output.unlink()
            except OSError as e:
                raise PackagingError(
                    f"Cannot remove stale {self.output}: {e}"
                ) from e
        return False

    def stage_contents(self) -> None:
        """Copy the bundle into a fresh staging folder with an install link."""
        if self.dry_run:
            self.log.info(
                "[DRY RUN] Would stage %s in %s", self.bundle, self.staging_dir
            )
            return
        try:
            self.staging_dir.mkdir(parents=True)
        except OSError as e:
            raise PackagingError(
                f"Cannot create staging directory {self.staging_dir}: {e}"
            ) from e
        self.run_command(
            [
                "ditto",
                str(self.bundle),
                str(self.staging_dir / self.bundle.name),
            ],
            "Copying bundle to staging directory...",
        )
        self.add_install_link()

    def add_install_link(self) -> None:
        """Link the install folder so the image supports drag-and-drop.

        A failure here only costs convenience, so it is a warning.
        """
        link = self.staging_dir / self.format.link_name
        self.log.info("Creating link to %s...", self.format.install_dir)
        try:
            os.symlink(self.format.install_dir, link)
        except OSError as e:
            self.log.warning("Failed to create symbolic link: %s", e)
            return
        if link.is_symlink():
            self.log.log(SUCCESS, "Added link: %s", self.format.link_name)
        else:
            self.log.warning("Link creation reported success but link not found")

    def staged_size_mb(self) -> int:
        """Size of what goes on the image (the bundle itself in dry-run)."""
        source = self.bundle if self.dry_run else self.staging_dir
        return directory_size_mb(source)

    def capacity_mb(self) -> int:
        """Staged size in whole MB plus the fixed padding."""
        return self.staged_size_mb() + self.padding_mb

    def create_image(self) -> None:
        """Build a compressed UDZO image from the staging folder.

        Raises:
            CommandError: If hdiutil fails
            PackagingError: If hdiutil reports success but wrote nothing
        """
        size_mb = self.capacity_mb()
        self.log.info(
            "Staging directory size: %dMB, creating %dMB DMG...",
            size_mb - self.padding_mb,
            size_mb,
        )
        command = [
            "hdiutil",
            "create",
            "-srcfolder",
            str(self.staging_dir),
            "-volname",
            self.volume_name,
            "-format",
            "UDZO",
            "-size",
            f"{size_mb}m",
            "-ov",
            str(self.temp_image),
        ]
        self.run_command(command, "Creating disk image...")
        if not self.dry_run and not self.temp_image.exists():
            raise PackagingError(f"Failed to create DMG: {self.temp_image}")

    def sign_image(self) -> None:
        """Sign the temporary image with the Developer ID identity."""
        command = [
            "codesign",
            "--force",
            "--timestamp",
            "--sign",
            self.identity,
            str(self.temp_image),
        ]
        try:
            self.run_command(
                command, f"Signing disk image with cert: {self.identity}..."
            )
        except CommandError as e:
            raise CodesignError(
                f"Signing failed for {self.temp_image}: {e}"
            ) from e
        self.stage = Stage.SIGNED

    def notarize_image(self) -> None:
        """Submit the temporary image, then staple its ticket."""
        self.notarizer.submit(self.temp_image)
        self.stage = Stage.NOTARIZED
        self.notarizer.staple(self.temp_image)
        self.stage = Stage.STAPLED

    def finalize(self) -> None:
        """Move the finished image next to the bundle."""
        self.log.info("Moving disk image to final location...")
        if self.dry_run:
            self.log.info(
                "[DRY RUN] Would move %s to %s", self.temp_image, self.output
            )
            return
        try:
            shutil.move(self.temp_image, self.output)
        except OSError as e:
            raise PackagingError(
                f"Failed to move {self.temp_image} to {self.output}: {e}"
            ) from e

    def cleanup(self) -> None:
        """Remove the staging folder and any unfinished temporary image."""
        if self.staging_dir.exists():
            shutil.rmtree(self.staging_dir, ignore_errors=True)
        self.temp_image.unlink(missing_ok=True)

    def process(self) -> Stage:
        """Execute the full disk image workflow.

        Returns:
            STAPLED, or ALREADY_COMPLETE if the existing image was kept
        """
        self.log.info("Creating DMG for %s...", self.format.label)
        if self.existing_is_complete():
            self.log.log(
                SUCCESS,
                "DMG already exists and is fully signed and notarized. Skipping...",
            )
            self.stage = Stage.ALREADY_COMPLETE
            return self.stage

        try:
            try:
                self.stage_contents()
                self.create_image()
            except CommandError as e:
                raise PackagingError(
                    f"Building {self.output.name} failed: {e}"
                ) from e
            self.sign_image()
            self.notarize_image()
            self.finalize()
        finally:
            self.cleanup()

        self.log.log(
            SUCCESS, "DMG created, signed and notarized: %s", self.output
        )
        return self.stage


# ----------------------------------------------------------------------------
# Functional API


class BundleResult:
    """Outcome of processing one command-line input."""

    def __init__(self, path: Pathlike, fmt: PluginFormat | None = None):
        self.path = Path(path)
        self.format = fmt
        self.bundle_stage: Stage | None = None
        self.dmg_stage: Stage | None = None
        self.error: PluginPackError | None = None
        self.skipped = False

    @property
    def ok(self) -> bool:
        return self.error is None

    def __repr__(self) -> str:
        return (
            f"<BundleResult {self.path.name} bundle={self.bundle_stage} "
            f"dmg={self.dmg_stage} error={self.error!r}>"
        )


def process_bundle(
    path: Pathlike,
    fmt: PluginFormat,
    credentials: Credentials,
    create_dmg: bool = False,
    entitlements: Pathlike | None = None,
    dry_run: bool = False,
) -> BundleResult:
    """Run the bundle track, then the disk image track if requested.

    Errors are recorded on the result rather than raised, so one failing
    bundle does not stop the others.
    """
    log = logging.getLogger("pluginpack")
    result = BundleResult(path, fmt)

    try:
        processor = BundleProcessor(
            path, fmt, credentials, entitlements, dry_run
        )
        result.bundle_stage = processor.process()
    except PluginPackError as e:
        result.error = e
        log.error("Failed to process: %s (%s)", result.path.name, e)
        return result
    log.log(SUCCESS, "Successfully processed: %s", result.path.name)

    if create_dmg and result.bundle_stage.is_final:
        try:
            packager = DiskImagePackager(path, fmt, credentials, dry_run)
            result.dmg_stage = packager.process()
        except PluginPackError as e:
            result.error = e
            log.error(
                "Failed to create DMG for: %s (%s)", result.path.name, e
            )
            return result
        log.log(SUCCESS, "DMG created for: %s", result.path.name)

    return result


def process_inputs(
    paths: list[Pathlike],
    credentials: Credentials,
    create_dmg: bool = False,
    entitlements: Pathlike | None = None,
    dry_run: bool = False,
) -> list[BundleResult]:
    """Process each input in order, one bundle fully before the next.

    Inputs that are missing, not directories or of an unknown format are
    skipped with a warning.
    """
    log = logging.getLogger("pluginpack")
    results = []
    for raw_path in paths:
        path = Path(raw_path)
        try:
            fmt = resolve_input(path)
        except ValidationError as e:
            log.warning("Skipping: %s", e)
            skipped = BundleResult(path)
            skipped.skipped = True
            results.append(skipped)
            continue

        log.info("Processing: %s", path.name)
        results.append(
            process_bundle(
                path, fmt, credentials, create_dmg, entitlements, dry_run
            )
        )
    return results


# ----------------------------------------------------------------------------
# Command-line interface


def prompt_create_dmg(input_func=input) -> bool:
    """Ask the operator whether disk images should be built too."""
    print("Options:")
    print("1. Sign & notarize bundles only")
    print("2. Sign & notarize bundles + create signed/notarized DMGs")
    print()
    try:
        choice = input_func("Choose option (1 or 2): ").strip()
    except EOFError:
        choice = ""

    if choice == "1":
        return False
    if choice == "2":
        return True
    logging.getLogger("pluginpack").warning(
        "Invalid option. Defaulting to bundles only."
    )
    return False


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pluginpack",
        description=(
            "Sign, notarize and optionally package VST3, AudioUnit and "
            "Standalone App bundles."
        ),
        epilog=(
            "Environment:\n"
            f"  {ENV_CERT_NAME}  codesign identity (required)\n"
            f"  {ENV_KEYCHAIN_PROFILE}  notarytool keychain profile (required)\n"
            f"  {ENV_TRACE}=1  trace every executed command\n"
            "\n"
            "Examples:\n"
            "  pluginpack MyPlugin.vst3 MyPlugin.component\n"
            "  pluginpack --dmg MyPlugin.app\n"
            "  pluginpack --no-dmg --dry-run build/*.vst3\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "bundles",
        nargs="+",
        metavar="BUNDLE",
        help="bundle to process (.vst3, .component or .app)",
    )
    dmg_group = parser.add_mutually_exclusive_group()
    dmg_group.add_argument(
        "--dmg",
        dest="dmg",
        action="store_true",
        help="also build signed/notarized disk images (skip the prompt)",
    )
    dmg_group.add_argument(
        "--no-dmg",
        dest="dmg",
        action="store_false",
        help="sign & notarize bundles only (skip the prompt)",
    )
    parser.set_defaults(dmg=None)
    parser.add_argument(
        "-e",
        "--entitlements",
        metavar="FILE",
        help="entitlements.plist applied to each bundle signature",
    )
    parser.add_argument(
        "-c",
        "--config",
        metavar="FILE",
        help="config file (default: .pluginpack.toml or pluginpack.toml)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="show commands without executing",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help=f"trace every executed command (same as {ENV_TRACE}=1)",
    )
    parser.add_argument(
        "--no-color",
        action="store_true",
        help="disable colored output",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    return parser


def _run(args: argparse.Namespace) -> int:
    log = logging.getLogger("pluginpack")

    load_dotenv()
    config = load_config(Path(args.config) if args.config else None)
    credentials = Credentials.from_env(config=config)
    credentials.validate()

    log.info("Received %d argument(s)", len(args.bundles))
    for bundle in args.bundles:
        log.debug("  - %s", bundle)
    log.log(SUCCESS, "Using certificate: %s", credentials.cert_name)
    log.log(SUCCESS, "Using keychain profile: %s", credentials.keychain_profile)

    entitlements = args.entitlements or get_config_value(
        config, "sign", "entitlements"
    )
    if entitlements and not Path(entitlements).exists():
        raise ConfigurationError(f"Entitlements file not found: {entitlements}")

    create_dmg = args.dmg if args.dmg is not None else prompt_create_dmg()

    results = process_inputs(
        args.bundles,
        credentials,
        create_dmg=create_dmg,
        entitlements=entitlements,
        dry_run=args.dry_run,
    )

    failed = [r for r in results if not r.ok]
    if failed:
        log.error(
            "Process complete with %d failure(s): %s",
            len(failed),
            ", ".join(r.path.name for r in failed),
        )
        return 1
    log.log(SUCCESS, "Process complete!")
    if create_dmg:
        log.info(
            "DMG files have been created in the same directory as the "
            "original bundles"
        )
    return 0


def main(argv: list[str] | None = None) -> None:
    """Command line interface for pluginpack."""
    try:
        parser = build_parser()
        args = parser.parse_args(argv)
        trace = os.getenv(ENV_TRACE) == "1"
        setup_logging(args.verbose or trace, not args.no_color)
        sys.exit(_run(args))
    except PluginPackError as e:
        logging.getLogger("pluginpack").error(str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        logging.getLogger("pluginpack").info("Interrupted by user")
        sys.exit(130)


if __name__ == "__main__":
    main()
