"""Build matrix runner.

Expands a RunConfig into (target, subtarget, packageset, device) units and
builds them one after another. Every unit ends as a UnitResult: toolchain
failures are recorded for their (target, subtarget) pair, device failures
for their device, and the loop moves on. Nothing is retried.

Per toolchain the runner goes through::

    prepared -> keys installed -> per device:
        package list computed -> built -> artifacts collected
"""

from __future__ import annotations

import logging
import shutil
from collections.abc import Callable, Iterator
from pathlib import Path

import httpx

from falter_imagegen.builds.artifacts import relocate_artifacts
from falter_imagegen.builds.runner import BuildResult, run_image_build
from falter_imagegen.errors import (
    DeviceBuildFailed,
    InvalidSigningKey,
    RemoteIndexError,
    ToolchainFetchFailed,
)
from falter_imagegen.packagesets.packagelist import (
    LOW_FLASH_DEVICES,
    LOW_FLASH_OVERRIDES,
    DevicePackageListBuilder,
    FlashSizeLookup,
    Packageset,
    load_packageset,
    packageset_names,
)
from falter_imagegen.remote.index import list_subtargets, list_targets
from falter_imagegen.toolchain.cache import ToolchainCache, ToolchainHandle
from falter_imagegen.toolchain.catalog import (
    MakeInfoCatalog,
    ToolchainCatalog,
    install_feed_repository,
    install_signing_key,
)
from falter_imagegen.toolchain.fetch import targets_url
from falter_imagegen.types import (
    BuildStatus,
    BuildUnit,
    RunConfig,
    RunSummary,
    UnitResult,
)

logger = logging.getLogger(__name__)

CatalogFactory = Callable[[Path], ToolchainCatalog]
BuildStep = Callable[..., BuildResult]


def default_package_builder(config: RunConfig) -> DevicePackageListBuilder:
    """Package list builder from the built-in device sets, settings and flash sizes."""
    settings = config.settings
    return DevicePackageListBuilder(
        flash_lookup=FlashSizeLookup(config.flash_sizes),
        low_flash_devices=LOW_FLASH_DEVICES | set(settings.low_flash_devices),
        low_flash_overrides=LOW_FLASH_OVERRIDES | set(settings.low_flash_overrides),
    )


class BuildMatrixRunner:
    """Sequentially build every unit of the matrix described by a RunConfig."""

    def __init__(
        self,
        config: RunConfig,
        client: httpx.Client,
        toolchains: ToolchainCache | None = None,
        package_builder: DevicePackageListBuilder | None = None,
        catalog_factory: CatalogFactory | None = None,
        build_step: BuildStep = run_image_build,
    ) -> None:
        self.config = config
        self.settings = config.settings
        self.client = client
        self.toolchains = toolchains or ToolchainCache(client, config.settings)
        self.package_builder = package_builder or default_package_builder(config)
        self.catalog_factory = catalog_factory or MakeInfoCatalog
        self.build_step = build_step

    @property
    def signing_key_url(self) -> str:
        return f"{self.config.feed_url.rstrip('/')}/{self.settings.signing_key_name}"

    def clear_workspace(self) -> None:
        """Remove leftovers of previous runs.

        The output tree is only cleared when images are going to be built;
        listing profiles leaves it untouched.
        """
        dirs = [self.settings.work_dir]
        if not self.config.list_profiles:
            dirs.append(self.settings.output_dir)
        for path in dirs:
            if path.exists():
                logger.debug("Clearing %s", path)
                shutil.rmtree(path)

    def iter_pairs(self, summary: RunSummary) -> Iterator[tuple[str, str, str]]:
        """Yield (target, subtarget, url) pairs, recording listing failures."""
        config = self.config
        base = targets_url(self.settings.openwrt_base_url, config.release)
        timeout = self.settings.http_timeout

        if config.all_targets:
            try:
                targets = list_targets(self.client, base, timeout=timeout)
            except RemoteIndexError as e:
                logger.error("Cannot list targets: %s", e)
                summary.results.append(
                    UnitResult(
                        target="all",
                        subtarget="*",
                        status=BuildStatus.FAILED,
                        error_code=e.code,
                        error_message=str(e),
                    )
                )
                return
        else:
            targets = [config.target]

        for target in targets:
            target_url = f"{base}{target}/"
            if config.subtarget:
                subtargets = [config.subtarget]
            else:
                try:
                    subtargets = list_subtargets(
                        self.client, target_url, timeout=timeout
                    )
                except RemoteIndexError as e:
                    logger.warning("Skipping target %s: %s", target, e)
                    summary.results.append(
                        UnitResult(
                            target=target,
                            subtarget="*",
                            status=BuildStatus.FAILED,
                            error_code=e.code,
                            error_message=str(e),
                        )
                    )
                    continue
                if not subtargets:
                    logger.warning("Skipping target %s: no subtargets found", target)
                    summary.results.append(
                        UnitResult(
                            target=target,
                            subtarget="*",
                            status=BuildStatus.SKIPPED,
                            error_message="No subtargets found",
                        )
                    )
                    continue

            for subtarget in subtargets:
                yield target, subtarget, f"{target_url}{subtarget}/"

    def prepare_toolchain(
        self, url: str, target: str, subtarget: str
    ) -> ToolchainHandle:
        """Fetch the toolchain and install the falter feed and its key.

        Raises:
            ToolchainFetchFailed: If the toolchain cannot be prepared.
            InvalidSigningKey: If the feed key is unusable.
        """
        handle = self.toolchains.fetch(
            url, target, subtarget, override=self.config.imagebuilder_override
        )
        install_feed_repository(
            handle.root_dir,
            self.config.feed_url,
            self.config.release.version,
            self.settings.feed_name,
            handle.branch,
        )
        install_signing_key(
            self.client,
            self.signing_key_url,
            handle.root_dir,
            timeout=self.settings.http_timeout,
        )
        return handle

    def build_device(
        self,
        handle: ToolchainHandle,
        unit: BuildUnit,
        packageset: Packageset | None,
    ) -> UnitResult:
        """Build one device and collect its artifacts."""
        result = UnitResult(
            target=unit.target,
            subtarget=unit.subtarget,
            packageset=unit.packageset,
            device=unit.device,
            status=BuildStatus.FAILED,
        )

        base = packageset.packages if packageset else []
        packages = self.package_builder.build(base, unit.device)

        log_name = "-".join(
            [unit.target, unit.subtarget, unit.packageset or "default", unit.device]
        )
        log_path = self.settings.work_dir / "logs" / f"{log_name}.log"
        result.log_path = str(log_path)

        # Leftovers of a failed build must not end up in this device's bucket
        shutil.rmtree(handle.output_dir, ignore_errors=True)

        try:
            build = self.build_step(
                device=unit.device,
                packages=packages,
                imagebuilder_root=handle.root_dir,
                log_path=log_path,
                files_dir=self.settings.files_dir,
                extra_image_name=self.config.image_name_suffix,
                timeout=self.settings.build_timeout,
            )
        except DeviceBuildFailed as e:
            result.error_code = e.code
            result.error_message = str(e)
            return result

        if not build.success:
            error = DeviceBuildFailed(
                unit.device,
                build.error_message or "Build failed",
                exit_code=build.exit_code,
                log_path=str(build.log_path),
            )
            result.error_code = error.code
            result.error_message = str(error)
            return result

        output_root = self.settings.output_dir
        bucket = output_root / unit.packageset if unit.packageset else output_root
        try:
            result.artifacts = relocate_artifacts(
                handle.output_dir, bucket, output_root
            )
        except (OSError, ValueError) as e:
            result.error_code = "relocation_error"
            result.error_message = f"Cannot collect artifacts of {unit.device}: {e}"
            logger.error(result.error_message)
            return result
        if not result.artifacts:
            result.error_code = "no_artifacts"
            result.error_message = f"Build of {unit.device} produced no artifacts"
            logger.error(result.error_message)
            return result

        result.status = BuildStatus.SUCCEEDED
        logger.info("Built %s (%d artifacts)", unit.describe(), len(result.artifacts))
        return result

    def run_toolchain(
        self,
        url: str,
        target: str,
        subtarget: str,
        packageset: Packageset | None,
        summary: RunSummary,
    ) -> None:
        """Prepare one toolchain and build (or list) its devices."""
        packageset_name = packageset.name if packageset else None
        try:
            handle = self.prepare_toolchain(url, target, subtarget)
            catalog = self.catalog_factory(handle.root_dir)
            if self.config.list_profiles:
                summary.profiles[f"{target}/{subtarget}"] = catalog.list_profiles()
                return
            if self.config.device:
                devices = [self.config.device]
            else:
                devices = catalog.list_profiles()
        except (ToolchainFetchFailed, InvalidSigningKey) as e:
            logger.error("Skipping %s/%s: %s", target, subtarget, e)
            summary.results.append(
                UnitResult(
                    target=target,
                    subtarget=subtarget,
                    packageset=packageset_name,
                    status=BuildStatus.FAILED,
                    error_code=e.code,
                    error_message=str(e),
                )
            )
            return

        for device in devices:
            unit = BuildUnit(
                release=self.config.release,
                target=target,
                subtarget=subtarget,
                device=device,
                packageset=packageset_name,
            )
            summary.results.append(self.build_device(handle, unit, packageset))

    def run(self) -> RunSummary:
        """Run the whole matrix and return its summary."""
        summary = RunSummary()
        self.clear_workspace()

        paths = self.config.packagesets
        packagesets: list[Packageset | None] = [
            load_packageset(path, name=name)
            for path, name in zip(paths, packageset_names(paths))
        ]
        if not packagesets or self.config.list_profiles:
            packagesets = [None]

        for target, subtarget, url in self.iter_pairs(summary):
            for packageset in packagesets:
                self.run_toolchain(url, target, subtarget, packageset, summary)

        logger.info(
            "Matrix finished: %d succeeded, %d failed",
            summary.succeeded,
            summary.failed,
        )
        return summary


__all__ = ["BuildMatrixRunner", "default_package_builder"]
