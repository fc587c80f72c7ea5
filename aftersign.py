#!/usr/bin/env python3
"""aftersign.py

Post-sign stage of the electron-builder build: notarizes signed macOS
builds for distribution outside the Mac App Store.

electron-builder calls its `afterSign` hook (see `ebwrapper`, which points
it at `scripts/afterSign.js` by default) once per signed build. The hook
forwards its context to this module as JSON:

    aftersign - < context.json

    {"appOutDir": "dist/mac", "packager": {"appInfo": {"productFilename":
     "Scratch 3"}}, "targets": [{"name": "dmg"}]}

- after_sign() dispatches on the target that was built
- notarize_mac_build() reads the Apple ID from the environment
- Notarizer submits the .app with notarytool, waits, and staples the ticket

"""
import argparse
import json
import logging
import os
import sys
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from ebwrapper import (
    CommandError,
    ConfigurationError,
    NotarizationError,
    Pathlike,
    ProgressSpinner,
    WrapperError,
    get_config_value,
    load_config,
    run_command,
    setup_logging,
)

# must match appId in the electron-builder config
DEFAULT_APP_ID = "edu.mit.scratch.scratch-desktop"

ENV_APPLE_ID = "AC_USERNAME"
ENV_APPLE_ID_PASSWORD = "AC_PASSWORD"
ENV_TEAM_ID = "AC_TEAM_ID"

KEYCHAIN_PREFIX = "@keychain:"
KEYCHAIN_ITEM_TMPL = "Application Loader: {apple_id}"

MAS_TARGETS = ("mas", "mas-dev")
NOTARIZED_TARGETS = ("dmg",)

UNNOTARIZED_WARNING = "\n".join(
    [
        "This build is not notarized and will not run on newer versions of macOS!",
        "Notarizing the macOS build requires an Apple ID. To notarize future builds:",
        f"* Set the environment variable {ENV_APPLE_ID} to your@apple.id and",
        f"* Either set {ENV_APPLE_ID_PASSWORD} or ensure your keychain has an "
        'item for "Application Loader: your@apple.id", and',
        f"* Set {ENV_TEAM_ID} to your developer team id",
    ]
)

STATUS_ACCEPTED = "Accepted"


@dataclass(frozen=True)
class NotarizationContext:
    """What electron-builder tells the post-sign hook about a build."""

    app_out_dir: Path
    product_filename: str
    targets: tuple[str, ...]

    @classmethod
    def from_dict(cls, data: Mapping) -> "NotarizationContext":
        """Build a context from electron-builder's afterSign context."""
        try:
            app_out_dir = data["appOutDir"]
            product_filename = data["packager"]["appInfo"]["productFilename"]
            targets = tuple(
                target if isinstance(target, str) else target["name"]
                for target in data["targets"]
            )
        except (KeyError, TypeError) as e:
            raise ConfigurationError(
                f"Malformed post-sign context, missing {e}"
            ) from e
        if not targets:
            raise ConfigurationError("Post-sign context lists no targets")
        return cls(Path(app_out_dir), product_filename, targets)

    @property
    def app_path(self) -> Path:
        return self.app_out_dir / f"{self.product_filename}.app"


def target_type(target_name: str) -> str:
    """'dmg:arm64' -> 'dmg'"""
    return target_name.split(":", 1)[0]


class Notarizer:
    """Submits an app bundle to Apple's notary service and staples it.

    1. Zip the bundle with ditto
    2. Submit it with `xcrun notarytool submit --wait`
    3. Staple the ticket to the bundle

    A password of the form `@keychain:<item>` is looked up in the login
    keychain with `security find-generic-password` before submitting.

    Args:
        app_bundle_id: primary bundle id of the app
        app_path: path to the .app bundle
        apple_id: Apple ID used to submit
        apple_id_password: app-specific password or a keychain reference
        team_id: developer team id of the Apple ID
        dry_run: If True, show commands without executing
    """

    def __init__(
        self,
        app_bundle_id: str,
        app_path: Pathlike,
        apple_id: str,
        apple_id_password: str,
        team_id: str,
        dry_run: bool = False,
    ) -> None:
        self.app_bundle_id = app_bundle_id
        self.app_path = Path(app_path)
        self.apple_id = apple_id
        self.apple_id_password = apple_id_password
        self.team_id = team_id
        self.dry_run = dry_run
        self.log = logging.getLogger(self.__class__.__name__)
        self._secrets = [apple_id_password]

    def run_command(self, command: list[str]) -> str:
        return run_command(
            command,
            dry_run=self.dry_run,
            log=self.log,
            secrets=tuple(self._secrets),
        )

    def resolve_password(self) -> str:
        """Return the password, reading it from the keychain if needed.

        Raises:
            NotarizationError: If the keychain item cannot be read
        """
        if not self.apple_id_password.startswith(KEYCHAIN_PREFIX):
            return self.apple_id_password
        item = self.apple_id_password[len(KEYCHAIN_PREFIX):]
        self.log.info('Reading password from keychain item "%s"', item)
        try:
            output = self.run_command(
                ["security", "find-generic-password", "-s", item, "-w"]
            )
        except CommandError as e:
            raise NotarizationError(
                f'Cannot read keychain item "{item}": {e.output or e}'
            ) from e
        if self.dry_run:
            return self.apple_id_password
        password = output.strip()
        self._secrets.append(password)
        return password

    def zip_app(self, dest_dir: Path) -> Path:
        """Zip the bundle for upload, preserving its resource forks."""
        archive = dest_dir / f"{self.app_path.stem}.zip"
        self.log.info("Zipping %s", self.app_path)
        self.run_command(
            [
                "ditto",
                "-c",
                "-k",
                "--sequesterRsrc",
                "--keepParent",
                str(self.app_path),
                str(archive),
            ]
        )
        return archive

    def submit(self, archive: Path, password: str) -> dict:
        """Submit `archive` and wait for Apple's verdict.

        Returns:
            notarytool's JSON result (empty on a dry run)

        Raises:
            NotarizationError: If the submission fails or is not accepted
        """
        self.log.info(
            "Submitting %s (%s) for notarization",
            archive.name,
            self.app_bundle_id,
        )
        command = [
            "xcrun",
            "notarytool",
            "submit",
            str(archive),
            "--apple-id",
            self.apple_id,
            "--password",
            password,
            "--team-id",
            self.team_id,
            "--output-format",
            "json",
            "--wait",
        ]
        try:
            if self.dry_run:
                output = self.run_command(command)
            else:
                # Apple usually needs minutes, sometimes much longer
                with ProgressSpinner("Waiting for notarization"):
                    output = self.run_command(command)
        except CommandError as e:
            raise NotarizationError(
                f"Notarization failed for {self.app_path}: {e.output or e}"
            ) from e
        if self.dry_run:
            return {}

        try:
            result = json.loads(output)
        except json.JSONDecodeError as e:
            raise NotarizationError(
                f"Could not parse notarytool output: {output!r}"
            ) from e
        status = result.get("status")
        if status != STATUS_ACCEPTED:
            raise NotarizationError(
                f"Notarization of {self.app_path} finished with status "
                f"'{status}': {result.get('message', '')} "
                f"(submission id: {result.get('id', 'n/a')})"
            )
        self.log.info("Notarization submission id: %s", result.get("id"))
        return result

    def staple(self) -> None:
        self.log.info("Stapling %s", self.app_path)
        try:
            self.run_command(["xcrun", "stapler", "staple", str(self.app_path)])
        except CommandError as e:
            raise NotarizationError(
                f"Stapling failed for {self.app_path}: {e}"
            ) from e

    def process(self) -> None:
        """Execute the full notarization workflow."""
        if not self.dry_run and not self.app_path.exists():
            raise ConfigurationError(f"App bundle not found: {self.app_path}")

        password = self.resolve_password()
        with tempfile.TemporaryDirectory() as tmpdir:
            archive = self.zip_app(Path(tmpdir))
            self.submit(archive, password)

        self.staple()
        self.log.info("Notarized: %s", self.app_path)


def notarize(
    app_bundle_id: str,
    app_path: Pathlike,
    apple_id: str,
    apple_id_password: str,
    team_id: str,
    dry_run: bool = False,
) -> None:
    """Notarize and staple the app bundle at `app_path`."""
    Notarizer(
        app_bundle_id,
        app_path,
        apple_id,
        apple_id_password,
        team_id,
        dry_run=dry_run,
    ).process()


def notarize_mac_build(
    context: NotarizationContext,
    app_id: str = DEFAULT_APP_ID,
    environ: Mapping[str, str] | None = None,
    team_id: str | None = None,
    dry_run: bool = False,
) -> bool:
    """Notarize the app built in `context` with the Apple ID from the env.

    A missing Apple ID is only a warning: the unnotarized build is still
    a valid artifact. `team_id` falls back to the AC_TEAM_ID variable.

    Returns:
        True if the build was submitted for notarization

    Raises:
        ConfigurationError: If an Apple ID is set but no team id is
    """
    log = logging.getLogger("aftersign")
    environ = os.environ if environ is None else environ

    apple_id = environ.get(ENV_APPLE_ID)
    if not apple_id:
        log.warning(UNNOTARIZED_WARNING)
        return False

    team_id = team_id or environ.get(ENV_TEAM_ID)
    if not team_id:
        raise ConfigurationError(
            f"Notarizing as {apple_id} requires a team id. Set the "
            f"{ENV_TEAM_ID} environment variable or [notarize] team_id."
        )

    keychain_item = KEYCHAIN_ITEM_TMPL.format(apple_id=apple_id)
    password = environ.get(ENV_APPLE_ID_PASSWORD)
    if password:
        log.info('Notarizing with Apple ID "%s" and a password', apple_id)
    else:
        log.info(
            'Notarizing with Apple ID "%s" and keychain item "%s"',
            apple_id,
            keychain_item,
        )
        password = f"{KEYCHAIN_PREFIX}{keychain_item}"

    notarize(
        app_bundle_id=app_id,
        app_path=context.app_path,
        apple_id=apple_id,
        apple_id_password=password,
        team_id=team_id,
        dry_run=dry_run,
    )
    return True


def after_sign(
    context: NotarizationContext,
    app_id: str = DEFAULT_APP_ID,
    environ: Mapping[str, str] | None = None,
    team_id: str | None = None,
    dry_run: bool = False,
) -> bool:
    """Handle electron-builder's post-sign callback for one build.

    Every target of the build must share the notarization requirements of
    the first one, so builds mixing target types are rejected.

    Returns:
        True if the build was submitted for notarization
    """
    types = {target_type(name) for name in context.targets}
    if len(types) > 1:
        raise ConfigurationError(
            "Cannot notarize a build mixing target types: "
            + ", ".join(sorted(types))
        )

    first_target = target_type(context.targets[0])
    if first_target in MAS_TARGETS:
        # Mac App Store builds are notarized by Apple on submission
        return False
    if first_target in NOTARIZED_TARGETS:
        return notarize_mac_build(
            context,
            app_id=app_id,
            environ=environ,
            team_id=team_id,
            dry_run=dry_run,
        )
    return False


def read_context(source: str) -> NotarizationContext:
    """Read a post-sign context from a JSON file, or stdin for '-'."""
    try:
        if source == "-":
            data = json.load(sys.stdin)
        else:
            with open(source, encoding="utf-8") as f:
                data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Invalid post-sign context: {e}") from e
    except OSError as e:
        raise ConfigurationError(f"Cannot read post-sign context: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError("Post-sign context must be a JSON object")
    return NotarizationContext.from_dict(data)


def main(argv: list[str] | None = None) -> None:
    """Command line interface for the post-sign hook."""
    try:
        parser = argparse.ArgumentParser(
            prog="aftersign",
            description="Notarize a signed electron-builder macOS build.",
            epilog=(
                "Examples:\n"
                "  aftersign context.json\n"
                "  aftersign - < context.json\n"
            ),
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        parser.add_argument(
            "context",
            nargs="?",
            default="-",
            help="electron-builder afterSign context as JSON ('-' for stdin)",
        )
        parser.add_argument(
            "--app-id",
            metavar="ID",
            help=f"bundle id submitted to Apple (default: {DEFAULT_APP_ID})",
        )
        parser.add_argument(
            "--team-id",
            metavar="TEAM",
            help=(
                f"developer team id (default: ${ENV_TEAM_ID} or "
                "[notarize] team_id)"
            ),
        )
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="show commands without executing",
        )
        parser.add_argument(
            "--verbose",
            action="store_true",
            help="enable verbose/debug logging",
        )
        parser.add_argument(
            "--no-color",
            action="store_true",
            help="disable colored output",
        )
        args = parser.parse_args(argv)
        setup_logging(args.verbose, not args.no_color)

        config = load_config()
        app_id = args.app_id or get_config_value(
            config, "notarize", "app_id", DEFAULT_APP_ID
        )
        team_id = args.team_id or get_config_value(
            config, "notarize", "team_id"
        )

        after_sign(
            read_context(args.context),
            app_id=app_id,
            team_id=team_id,
            dry_run=args.dry_run,
        )

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
