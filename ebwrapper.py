#!/usr/bin/env python3
"""ebwrapper - run electron-builder once per build target.

This module wraps `electron-builder` with special management of the
code-signing configuration. Running it with no arguments builds every
default target for the current platform:

1. Plan the build passes for the host platform (one packager call each)
2. For each pass, keep or strip the CSC_* / WIN_CSC_* variables
3. Run electron-builder with the platform, target and mode flags
4. Stop at the first pass that fails

On Windows, set CSC_* or WIN_CSC_* or the signed NSIS build will fail.
On macOS the CSC_* variables are optional but respected when present.
Notarization of signed macOS builds is handled by the `aftersign` module,
which electron-builder calls through its `afterSign` hook.

Usage (CLI):
    # development build (packaged, unsigned)
    ebwrapper

    # unpacked directory build, extra arguments go to electron-builder
    ebwrapper --mode=dir --publish never

    # signed distribution build
    ebwrapper --mode dist

    # show the commands only; --help and --version go to electron-builder
    ebwrapper --wrapper-dry-run --mode dist

Usage (API):
    from ebwrapper import WrapperConfig, calculate_targets, run_builder

    config = WrapperConfig(mode="dist", environ=os.environ)
    for build_pass in calculate_targets(config):
        run_builder(config, build_pass)
"""

import argparse
import datetime
import itertools
import logging
import os
import re
import signal
import subprocess
import sys
import threading
import time
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from types import MappingProxyType

from dotenv import find_dotenv, load_dotenv

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

# ----------------------------------------------------------------------------
# Constants

__version__ = "0.1.0"

# Type aliases
Pathlike = Path | str

# Host platform identifiers, as reported by sys.platform
PLATFORM_WINDOWS = "win32"
PLATFORM_MAC = "darwin"
PLATFORM_LINUX = "linux"

# electron-builder flag selecting each host platform
PLATFORM_FLAGS = {
    PLATFORM_WINDOWS: "--windows",
    PLATFORM_MAC: "--macos",
    PLATFORM_LINUX: "--linux",
}

# Code signing configuration read by electron-builder
CSC_VARIABLES = (
    "CSC_LINK",
    "CSC_KEY_PASSWORD",
    "WIN_CSC_LINK",
    "WIN_CSC_KEY_PASSWORD",
)

# mode -> (do_package, do_sign)
MODES = {
    "dev": (True, False),
    "dir": (False, False),
    "dist": (True, True),
}
DEFAULT_MODE = "dev"

DEFAULT_BUILDER = "electron-builder"
DEFAULT_AFTER_SIGN = "scripts/afterSign.js"
DEFAULT_PROVISIONING_PROFILE = "mas-dev.provisionprofile"

# Architectures built per target
APPX_ARCHITECTURES = ("x64", "ia32", "arm64")
NSIS_ARCHITECTURES = ("ia32",)
MAC_ARCHITECTURES = ("x64", "arm64")

# A whole "--mode dist" token, as passed through some npm scripts
MODE_TOKEN_PATTERN = re.compile(r"^--mode\s+(.*)$", re.DOTALL)

CONFIG_FILENAMES = (".ebwrapper.toml", "ebwrapper.toml")

# ----------------------------------------------------------------------------
# Environment


def _load_dotenv() -> None:
    """Load a .env file from the working directory, if there is one."""
    load_dotenv(find_dotenv(usecwd=True))


_load_dotenv()


def host_platform() -> str:
    """Return the identifier of the platform we are running on."""
    return sys.platform


# ----------------------------------------------------------------------------
# Error handling


class WrapperError(Exception):
    """Base exception class for ebwrapper errors."""


class ConfigurationError(WrapperError):
    """Exception raised when configuration is invalid."""


class MissingSigningCredentialsError(ConfigurationError):
    """Exception raised when a signed build has no signing certificate."""


class UnsupportedPlatformError(WrapperError):
    """Exception raised for a host platform we cannot build on."""


class CommandError(WrapperError):
    """Exception raised when a command fails."""

    def __init__(
        self,
        command: str,
        returncode: int,
        output: str | None = None,
        message: str | None = None,
    ):
        self.command = command
        self.returncode = returncode
        self.output = output
        super().__init__(
            message
            or f"Command '{command}' failed with return code {returncode}"
        )


class ChildTerminatedBySignalError(CommandError):
    """Exception raised when the packager is killed by a signal."""

    def __init__(self, command: str, returncode: int):
        self.signal_name = _signal_name(-returncode)
        super().__init__(
            command,
            returncode,
            message=f"Child process terminated due to signal {self.signal_name}",
        )


class ChildNonZeroExitError(CommandError):
    """Exception raised when the packager exits with a non-zero status."""

    def __init__(self, command: str, returncode: int):
        super().__init__(
            command,
            returncode,
            message=f"Child process returned status code {returncode}",
        )


class NotarizationError(WrapperError):
    """Exception raised when notarization fails."""


def _signal_name(signum: int) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return str(signum)


# ----------------------------------------------------------------------------
# Configuration file support


def load_config(config_path: Path | None = None) -> dict[str, object]:
    """Load configuration from a TOML file.

    Searches for configuration in the following order:
    1. Explicit config_path if provided
    2. .ebwrapper.toml in current directory
    3. ebwrapper.toml in current directory

    Args:
        config_path: Optional explicit path to config file

    Returns:
        Configuration dictionary (empty if no config found)

    Raises:
        ConfigurationError: If the file found cannot be parsed

    Example .ebwrapper.toml:
        [build]
        builder = "npx electron-builder"
        after_sign = "scripts/afterSign.js"
        provisioning_profile = "mas-dev.provisionprofile"
        mode = "dev"

        [notarize]
        app_id = "edu.mit.scratch.scratch-desktop"
        team_id = "ABCDE12345"
    """
    if config_path and config_path.exists():
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
    config: Mapping[str, object],
    section: str,
    key: str,
    default: str | None = None,
) -> str | None:
    """Get a value from config with section.key lookup.

    Args:
        config: Configuration dictionary
        section: Section name (e.g., "build", "notarize")
        key: Key name within section
        default: Default value if not found

    Returns:
        Configuration value or default

    Raises:
        ConfigurationError: If the value is not a string
    """
    section_config = config.get(section, {})
    if not isinstance(section_config, dict):
        return default
    value = section_config.get(key, default)
    if value is None or isinstance(value, str):
        return value
    raise ConfigurationError(
        f"Invalid value for '{section}.{key}' in config: {value!r}"
    )


# ----------------------------------------------------------------------------
# Progress indicator


class ProgressSpinner:
    """Terminal spinner with elapsed time, for long waits on remote services.

    Example:
        with ProgressSpinner("Waiting for notarization"):
            submit_and_wait()
    """

    SPINNER_CHARS = ["|", "/", "-", "\\"]

    def __init__(self, message: str = "", stream=None):
        self.message = message
        self.stream = stream or sys.stdout
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._started = 0.0

    def elapsed(self) -> str:
        minutes, seconds = divmod(int(time.monotonic() - self._started), 60)
        return f"{minutes:02d}:{seconds:02d}"

    def _spin(self) -> None:
        spinner = itertools.cycle(self.SPINNER_CHARS)
        while not self._stop_event.wait(0.1):
            self.stream.write(
                f"\r{self.message} {next(spinner)} {self.elapsed()} "
            )
            self.stream.flush()
        self.stream.write(f"\r{self.message} done ({self.elapsed()})\n")
        self.stream.flush()

    def start(self) -> None:
        self._started = time.monotonic()
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._spin, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=1.0)

    def __enter__(self) -> "ProgressSpinner":
        self.start()
        return self

    def __exit__(self, *args: object) -> None:
        self.stop()


# ----------------------------------------------------------------------------
# Logging configuration


class CustomFormatter(logging.Formatter):
    """Custom logging formatting class with color support."""

    class color:
        """Text colors for terminal output."""

        white = "\x1b[97;20m"
        grey = "\x1b[38;20m"
        green = "\x1b[32;20m"
        yellow = "\x1b[33;20m"
        red = "\x1b[31;20m"
        bold_red = "\x1b[31;1m"
        reset = "\x1b[0m"

    cfmt = (
        f"{color.white}%(delta)s{color.reset} - "
        f"{{}}%(levelname)s{color.reset} - "
        f"{color.white}%(name)s.%(funcName)s{color.reset} - "
        f"{color.grey}%(message)s{color.reset}"
    )

    FORMATS = {
        logging.DEBUG: cfmt.format(color.grey),
        logging.INFO: cfmt.format(color.green),
        logging.WARNING: cfmt.format(color.yellow),
        logging.ERROR: cfmt.format(color.red),
        logging.CRITICAL: cfmt.format(color.bold_red),
    }

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color
        self.fmt = (
            "%(delta)s - %(levelname)s - %(name)s.%(funcName)s - %(message)s"
        )

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record with color if enabled."""
        log_fmt = self.FORMATS[record.levelno] if self.use_color else self.fmt
        duration = datetime.datetime.fromtimestamp(
            record.relativeCreated / 1000, datetime.timezone.utc
        )
        record.delta = duration.strftime("%H:%M:%S")
        return logging.Formatter(log_fmt).format(record)


def setup_logging(debug: bool = False, use_color: bool = True) -> None:
    """Configure logging for the application.

    Args:
        debug: Whether to enable debug logging
        use_color: Whether to use colored output
    """
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(CustomFormatter(use_color))
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        handlers=[stream_handler],
    )


# ----------------------------------------------------------------------------
# Command execution utilities


def run_command(
    command: list[str],
    dry_run: bool = False,
    log: logging.Logger | None = None,
    secrets: tuple[str, ...] = (),
) -> str:
    """Run a command and return its captured output.

    Args:
        command: The command as a list of arguments
        dry_run: If True, log command but don't execute (default: False)
        log: Optional logger for debug/dry-run output
        secrets: Strings masked in anything logged or raised

    Returns:
        The command stdout output

    Raises:
        CommandError: If the command fails
    """
    cmd_str = " ".join(command)
    for secret in secrets:
        if secret:
            cmd_str = cmd_str.replace(secret, "******")
    if log:
        log.debug("%s", cmd_str)
    if dry_run:
        if log:
            log.info("[DRY RUN] %s", cmd_str)
        return ""
    try:
        result = subprocess.run(
            command, shell=False, check=True, text=True, capture_output=True
        )
        return result.stdout
    except subprocess.CalledProcessError as e:
        raise CommandError(cmd_str, e.returncode, e.stderr or e.output) from e


# ----------------------------------------------------------------------------
# Build configuration


@dataclass(frozen=True)
class BuildPass:
    """One electron-builder call building one target for one or more archs.

    Attributes:
        platform: host platform of the pass ('win32', 'darwin', ...)
        target: electron-builder target name ('dmg', 'nsis', ...)
        architectures: electron-builder architecture names ('x64', ...)
    """

    platform: str
    target: str
    architectures: tuple[str, ...] = ()

    @property
    def name(self) -> str:
        """Target string as electron-builder expects it: 'dmg:x64 dmg:arm64'."""
        if not self.architectures:
            return self.target
        return " ".join(f"{self.target}:{arch}" for arch in self.architectures)


@dataclass(frozen=True)
class WrapperConfig:
    """Overall, immutable configuration for one wrapper invocation.

    Build passes are attached with `plan()`, which returns a new config.
    """

    mode: str = DEFAULT_MODE
    builder_args: tuple[str, ...] = ()
    platform: str = field(default_factory=host_platform)
    environ: Mapping[str, str] = field(default_factory=dict)
    targets: tuple[BuildPass, ...] = ()
    builder: str = DEFAULT_BUILDER
    after_sign: str = DEFAULT_AFTER_SIGN
    provisioning_profile: str = DEFAULT_PROVISIONING_PROFILE
    dry_run: bool = False

    def __post_init__(self) -> None:
        if self.mode not in MODES:
            raise ConfigurationError(
                f"Unknown mode '{self.mode}' (expected one of: "
                f"{', '.join(MODES)})"
            )
        object.__setattr__(self, "builder_args", tuple(self.builder_args))
        object.__setattr__(self, "targets", tuple(self.targets))
        object.__setattr__(
            self, "environ", MappingProxyType(dict(self.environ))
        )

    @property
    def do_package(self) -> bool:
        """False means build to an unpacked directory."""
        return MODES[self.mode][0]

    @property
    def do_sign(self) -> bool:
        return MODES[self.mode][1]


# ----------------------------------------------------------------------------
# Target planning


def is_target_of_type(target_name: str, target_type: str) -> bool:
    """Test if the target name is of the given target type.

    Args:
        target_name: the target name to test, like 'nsis' or 'dmg:arm64'
        target_type: the target type to look for, such as 'nsis' or 'dmg'

    Returns:
        True if `target_name` is exactly `target_type` or starts with
        `target_type` followed by ':'.
    """
    return target_name == target_type or target_name.startswith(
        f"{target_type}:"
    )


def calculate_targets(config: WrapperConfig) -> tuple[BuildPass, ...]:
    """Return the default build passes for the configured platform.

    Each pass is one call to electron-builder for exactly one target.
    electron-builder can build several targets in one call, but doing so
    has unwanted side effects on both macOS and Windows.

    Raises:
        UnsupportedPlatformError: If there are no targets for the platform
    """
    log = logging.getLogger("ebwrapper")
    platform = config.platform
    targets = []

    if platform == PLATFORM_WINDOWS:
        # Two passes so the AppX (signed by the MS Store) never sees CSC_*
        targets.append(BuildPass(platform, "appx", APPX_ARCHITECTURES))
        targets.append(BuildPass(platform, "nsis", NSIS_ARCHITECTURES))

    elif platform == PLATFORM_MAC:
        # 'dmg' and 'mas' in the same pass leaves the non-MAS copy unsigned.
        # 'mas' goes first so its output is ready while 'dmg' is notarized.
        profile = config.provisioning_profile
        if Path(profile).exists():
            targets.append(BuildPass(platform, "mas-dev", MAC_ARCHITECTURES))
        else:
            log.info("skipping 'mas-dev' targets: %s missing", profile)

        if config.do_sign:
            targets.append(BuildPass(platform, "mas", MAC_ARCHITECTURES))
        else:
            # electron-builder cannot build an unsigned MAS app
            log.info("skipping 'mas' targets: code-signing is disabled")

        targets.append(BuildPass(platform, "dmg", MAC_ARCHITECTURES))

    else:
        raise UnsupportedPlatformError(
            f"Could not determine targets for platform: {platform}"
        )

    return tuple(targets)


def plan(config: WrapperConfig) -> WrapperConfig:
    """Return a copy of `config` with its build passes calculated."""
    return replace(config, targets=calculate_targets(config))


# ----------------------------------------------------------------------------
# Running electron-builder


def strip_csc(environment: Mapping[str, str]) -> dict[str, str]:
    """Return a copy of `environment` without code signing configuration."""
    return {
        key: value
        for key, value in environment.items()
        if key not in CSC_VARIABLES
    }


def get_platform_flag(platform: str) -> str:
    """Return the electron-builder flag building for `platform`."""
    try:
        return PLATFORM_FLAGS[platform]
    except KeyError:
        raise UnsupportedPlatformError(
            f"Could not determine platform flag for platform: {platform}"
        ) from None


class BuildRunner:
    """Runs electron-builder for build passes, one at a time.

    Passes are never run concurrently: parallel electron-builder calls
    share (and corrupt) the same output directory.

    Args:
        config: the wrapper configuration

    Example:
        runner = BuildRunner(plan(config))
        runner.process()
    """

    def __init__(self, config: WrapperConfig) -> None:
        self.config = config
        self.log = logging.getLogger(self.__class__.__name__)

    def should_strip_csc(self, build_pass: BuildPass) -> bool:
        # electron-builder refuses to build AppX with any CSC_* variable set
        return (
            is_target_of_type(build_pass.name, "appx")
            or not self.config.do_sign
        )

    def child_environment(self, build_pass: BuildPass) -> Mapping[str, str]:
        """Environment for the electron-builder call building `build_pass`.

        Raises:
            MissingSigningCredentialsError: If a signed NSIS build has
                neither CSC_LINK nor WIN_CSC_LINK
        """
        if self.should_strip_csc(build_pass):
            environment = strip_csc(self.config.environ)
        else:
            environment = dict(self.config.environ)

        if (
            self.config.do_sign
            and is_target_of_type(build_pass.name, "nsis")
            and not (
                environment.get("CSC_LINK") or environment.get("WIN_CSC_LINK")
            )
        ):
            raise MissingSigningCredentialsError(
                "Signing NSIS build requires CSC_LINK or WIN_CSC_LINK"
            )
        return environment

    def command_args(self, build_pass: BuildPass) -> list[str]:
        """Arguments for the electron-builder call building `build_pass`."""
        config = self.config
        args = [get_platform_flag(config.platform), build_pass.name]

        if build_pass.platform == PLATFORM_MAC:
            mac_type = "distribution" if config.mode == "dist" else "development"
            args.append(f"--c.mac.type={mac_type}")
            if is_target_of_type(build_pass.name, "mas-dev"):
                args.append(
                    f"--c.mac.provisioningProfile={config.provisioning_profile}"
                )
            if config.do_sign:
                # the hook notarizes, so it only runs for signed builds
                args.append(f"--c.afterSign={config.after_sign}")
            else:
                args.append("--c.mac.identity=null")

        if not config.do_package:
            args.extend(["--dir", "--c.compression=store"])

        args.extend(config.builder_args)
        return args

    def run(self, build_pass: BuildPass) -> None:
        """Run electron-builder once for `build_pass`.

        Raises:
            MissingSigningCredentialsError: see `child_environment`
            ChildTerminatedBySignalError: If electron-builder was killed
            ChildNonZeroExitError: If electron-builder failed
            OSError: If electron-builder could not be started
        """
        environment = self.child_environment(build_pass)
        args = self.command_args(build_pass)
        # space-joined for the shell: 'dmg:x64 dmg:arm64' becomes two args
        command = " ".join([self.config.builder, *args])

        self.log.info(
            "running %s with arguments: %s", self.config.builder, " ".join(args)
        )
        if self.config.dry_run:
            self.log.info("[DRY RUN] %s", command)
            return

        result = subprocess.run(command, shell=True, env=dict(environment))
        if result.returncode < 0:
            raise ChildTerminatedBySignalError(command, result.returncode)
        if result.returncode:
            raise ChildNonZeroExitError(command, result.returncode)

    def process(self) -> None:
        """Run every planned build pass in order, stopping at a failure."""
        for build_pass in self.config.targets:
            self.run(build_pass)
        self.log.info("built %d target(s)", len(self.config.targets))


# ----------------------------------------------------------------------------
# Functional API


def run_builder(config: WrapperConfig, build_pass: BuildPass) -> None:
    """Run electron-builder once to build one pass (see `BuildRunner.run`)."""
    BuildRunner(config).run(build_pass)


def run_all(config: WrapperConfig) -> WrapperConfig:
    """Plan the build passes for `config` and run each of them in order.

    Returns:
        The planned configuration
    """
    planned = plan(config)
    BuildRunner(planned).process()
    return planned


# ----------------------------------------------------------------------------
# Command-line interface


def _split_mode_tokens(argv: list[str]) -> list[str]:
    """Rewrite single '--mode dist' tokens to '--mode=dist'."""
    result = []
    for arg in argv:
        match = MODE_TOKEN_PATTERN.match(arg)
        result.append(f"--mode={match.group(1)}" if match else arg)
    return result


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ebwrapper",
        description=(
            "Run electron-builder once per target with code-signing "
            "management. Only --mode and the --wrapper-* options are read "
            "here; every other argument, --help and --version included, is "
            "passed to electron-builder unchanged."
        ),
        epilog=(
            "Examples:\n"
            "  ebwrapper\n"
            "  ebwrapper --mode=dir\n"
            "  ebwrapper --mode dist --publish never\n"
            "  ebwrapper --wrapper-dry-run --mode dist --publish never\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        allow_abbrev=False,
        add_help=False,
    )
    parser.add_argument(
        "--wrapper-help",
        action="help",
        help="show this help message and exit",
    )
    parser.add_argument(
        "--mode",
        metavar="MODE",
        help=(
            "dev: packaged, unsigned (default); dir: unpacked directory, "
            "unsigned; dist: packaged, signed and notarized"
        ),
    )
    parser.add_argument(
        "--wrapper-dry-run",
        dest="dry_run",
        action="store_true",
        help="show electron-builder commands without running them",
    )
    parser.add_argument(
        "--wrapper-verbose",
        dest="verbose",
        action="store_true",
        help="enable verbose/debug logging",
    )
    parser.add_argument(
        "--wrapper-no-color",
        dest="no_color",
        action="store_true",
        help="disable colored output",
    )
    return parser


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse the wrapper's own options; everything else is passthrough.

    The wrapper reads only `--mode` and the `--wrapper-` prefixed options.
    The passthrough arguments end up, in their original order, in
    `builder_args`.
    """
    if argv is None:
        argv = sys.argv[1:]
    args, builder_args = build_parser().parse_known_args(
        _split_mode_tokens(list(argv))
    )
    args.builder_args = builder_args
    return args


def create_config(
    args: argparse.Namespace,
    file_config: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> WrapperConfig:
    """Build the wrapper configuration from parsed arguments.

    Command-line values win over the config file, which wins over defaults.

    Raises:
        ConfigurationError: If the mode or a config value is invalid
    """
    file_config = file_config or {}
    mode = args.mode
    if mode is None:
        mode = get_config_value(file_config, "build", "mode", DEFAULT_MODE)
    return WrapperConfig(
        mode=mode,
        builder_args=args.builder_args,
        platform=host_platform(),
        environ=os.environ if environ is None else environ,
        builder=get_config_value(
            file_config, "build", "builder", DEFAULT_BUILDER
        ),
        after_sign=get_config_value(
            file_config, "build", "after_sign", DEFAULT_AFTER_SIGN
        ),
        provisioning_profile=get_config_value(
            file_config,
            "build",
            "provisioning_profile",
            DEFAULT_PROVISIONING_PROFILE,
        ),
        dry_run=args.dry_run,
    )


def main(argv: list[str] | None = None) -> None:
    """Command line interface for ebwrapper."""
    try:
        args = parse_args(argv)
        setup_logging(args.verbose, not args.no_color)
        log = logging.getLogger("ebwrapper")

        config = create_config(args, load_config())
        log.debug(
            "mode=%s package=%s sign=%s platform=%s",
            config.mode,
            config.do_package,
            config.do_sign,
            config.platform,
        )
        run_all(config)

    except WrapperError as e:
        logging.error(str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        logging.info("Interrupted by user")
        sys.exit(130)
    except Exception as e:
        logging.error("Unexpected error: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
