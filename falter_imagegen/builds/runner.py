"""Image Builder invocation for a single device profile.

`run_image_build` runs ``make image`` inside an extracted Image Builder and
streams its output into a per-device log. A nonzero exit is reported in the
returned BuildResult; a build that cannot start or exceeds its timeout
raises DeviceBuildFailed.
"""

from __future__ import annotations

import logging
import shlex
import shutil
import subprocess
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TextIO

from falter_imagegen.errors import DeviceBuildFailed, MissingToolsError
from falter_imagegen.packagesets.packagelist import format_package_list

logger = logging.getLogger(__name__)

REQUIRED_TOOLS = ("make", "tar", "patch")

# Files and directories every extracted Image Builder carries
IMAGEBUILDER_MARKERS = ("Makefile", "target")


@dataclass
class BuildResult:
    """Outcome of one ``make image`` run.

    Attributes:
        device: Profile that was built.
        exit_code: Exit status of make.
        log_path: Where the make output went.
        duration: Wall clock seconds spent in make.
        command: Shell-quoted command line.
        error_message: Set when make exited nonzero.
    """

    device: str
    exit_code: int
    log_path: Path
    duration: float
    command: str
    error_message: str | None = None

    @property
    def success(self) -> bool:
        return self.exit_code == 0


def check_required_tools(tools: tuple[str, ...] = REQUIRED_TOOLS) -> None:
    """Ensure the host tools used for building are on PATH.

    Raises:
        MissingToolsError: If any tool is missing.
    """
    missing = [tool for tool in tools if shutil.which(tool) is None]
    if missing:
        raise MissingToolsError(missing)


def is_imagebuilder_root(path: Path) -> bool:
    """True if ``path`` holds an extracted Image Builder."""
    return path.is_dir() and all((path / m).exists() for m in IMAGEBUILDER_MARKERS)


def make_image_command(
    device: str,
    packages: list[str],
    files_dir: Path | None = None,
    extra_image_name: str | None = None,
) -> list[str]:
    """Argument vector for ``make image`` of one device profile.

    PACKAGES is omitted for an empty list and FILES when the overlay
    directory does not exist.
    """
    overlay = files_dir.resolve() if files_dir and files_dir.exists() else None
    args = {
        "PROFILE": device,
        "PACKAGES": format_package_list(packages),
        "FILES": str(overlay) if overlay else "",
        "EXTRA_IMAGE_NAME": extra_image_name or "",
    }
    return ["make", "image", *(f"{k}={v}" for k, v in args.items() if v)]


def _stamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _write_fields(log: TextIO, **fields: object) -> None:
    for name, value in fields.items():
        log.write(f"# {name.replace('_', ' ').capitalize()}: {value}\n")
    log.flush()


def run_image_build(
    device: str,
    packages: list[str],
    imagebuilder_root: Path,
    log_path: Path,
    files_dir: Path | None = None,
    extra_image_name: str | None = None,
    timeout: int | None = None,
) -> BuildResult:
    """Build the images of one device profile.

    Args:
        device: Image Builder profile name.
        packages: Final package list for the device.
        imagebuilder_root: Extracted Image Builder to run make in.
        log_path: File receiving the build output (created or truncated).
        files_dir: Optional overlay directory embedded into the image.
        extra_image_name: Suffix for image file names.
        timeout: Seconds before make is killed (None waits forever).

    Raises:
        DeviceBuildFailed: If make cannot be started or times out.
    """
    if not is_imagebuilder_root(imagebuilder_root):
        raise DeviceBuildFailed(
            device,
            f"{imagebuilder_root} is not an Image Builder directory",
            code="invalid_imagebuilder",
        )

    argv = make_image_command(device, packages, files_dir, extra_image_name)
    command = shlex.join(argv)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    logger.info("Building %s", device)
    logger.debug("Running %s in %s", command, imagebuilder_root)

    start = time.monotonic()
    with log_path.open("w") as log:
        _write_fields(
            log, command=command, directory=imagebuilder_root, started=_stamp()
        )
        log.write("\n")
        log.flush()
        try:
            proc = subprocess.run(
                argv,
                cwd=imagebuilder_root,
                stdout=log,
                stderr=subprocess.STDOUT,
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            log.write(f"\n# Killed after {timeout} seconds\n")
            message = f"make image timed out after {timeout} seconds"
            logger.error("%s: %s (log: %s)", device, message, log_path)
            raise DeviceBuildFailed(
                device,
                message,
                exit_code=-1,
                log_path=str(log_path),
                code="build_timeout",
            ) from e
        except OSError as e:
            logger.error("%s: cannot run make: %s", device, e)
            raise DeviceBuildFailed(
                device,
                f"Cannot run make: {e}",
                log_path=str(log_path),
                code="execution_error",
            ) from e

        duration = time.monotonic() - start
        log.write("\n")
        _write_fields(
            log,
            finished=_stamp(),
            exit_code=proc.returncode,
            duration=f"{duration:.1f}s",
        )

    result = BuildResult(
        device=device,
        exit_code=proc.returncode,
        log_path=log_path,
        duration=duration,
        command=command,
    )
    if not result.success:
        result.error_message = f"make image exited with status {proc.returncode}"
        logger.error("%s: %s (log: %s)", device, result.error_message, log_path)
    return result


__all__ = [
    "REQUIRED_TOOLS",
    "BuildResult",
    "check_required_tools",
    "is_imagebuilder_root",
    "make_image_command",
    "run_image_build",
]
