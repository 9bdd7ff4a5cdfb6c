"""hotdeploy: Deploy Orchestrator

deploy(build_dir) runs a fixed sequence against a READY connection:

1. Identity: read plugin.json from the build output. No manifest, no call.
2. Transfer: replace <managed root>/<identity> with the build output, by a
   local remove-then-copy when the managed root is on this filesystem, or by
   removeDir + writeFiles when the host advertises remote transfer.
3. Activate: reloadUnit(identity). A false result means the host has never
   seen the unit: loadDirectoryUnit(identity), then setUnitStatus(true) and
   loadUnitById, whose failures are logged and ignored.

Files are not rolled back when activation fails; deploying again converges.
Secondary artifact sets are built and copied into <identity>/<subdir> after
the primary transfer, each on its own.
"""

from __future__ import annotations
import asyncio
import logging
import os
import time
from typing import Dict, List, Optional

from client.connection import ConnectionManager
from core import transfer
from core.errors import (
    AuthRejection,
    DeployError,
    DeployPreconditionError,
    HotDeployError,
    safe_text,
)
from core.rpc import ACTIVATION_TIMEOUT
from models.models import (
    MANIFEST_FILENAME,
    DeployJob,
    DeployResult,
    DeployTrigger,
    SecondaryArtifactSet,
    TransferMode,
    UnitManifest,
)

logger = logging.getLogger("hotdeploy.deployer")

SECONDARY_BUILD_TIMEOUT = 300.0


def read_identity(build_dir: str) -> UnitManifest:
    """Return the manifest of a build output or raise DeployPreconditionError."""
    if not os.path.isdir(build_dir):
        raise DeployPreconditionError(f"build output not found: {build_dir}")
    try:
        manifest = UnitManifest.find(build_dir)
    except ValueError as e:
        raise DeployPreconditionError(f"unreadable {MANIFEST_FILENAME} in {build_dir}: {e}") from e
    if manifest is None:
        raise DeployPreconditionError(f"no {MANIFEST_FILENAME} in {build_dir}")
    return manifest


class DeployOrchestrator:
    def __init__(
        self,
        connection: ConnectionManager,
        transfer_mode: TransferMode = TransferMode.AUTO,
        secondary_sets: Optional[List[SecondaryArtifactSet]] = None,
        activation_timeout: float = ACTIVATION_TIMEOUT,
    ):
        self.connection = connection
        self.transfer_mode = transfer_mode
        self.secondary_sets = list(secondary_sets or [])
        self.activation_timeout = activation_timeout
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, identity: str) -> asyncio.Lock:
        lock = self._locks.get(identity)
        if lock is None:
            lock = self._locks[identity] = asyncio.Lock()
        return lock

    async def deploy(self, build_dir: str, trigger: DeployTrigger = DeployTrigger.MANUAL) -> DeployResult:
        build_dir = os.path.abspath(build_dir)
        manifest = read_identity(build_dir)
        job = DeployJob(source_dir=build_dir, identity=manifest.name, trigger=trigger)
        if not self.connection.ready:
            raise DeployPreconditionError("not connected to the host", unit_id=job.identity)

        async with self._lock_for(job.identity):
            return await self._run(job)

    async def _run(self, job: DeployJob) -> DeployResult:
        started = time.monotonic()
        identity = job.identity
        info = self.connection.host_info
        if info is None:
            raise DeployPreconditionError("host info unavailable", unit_id=identity)
        mode = self._select_mode(info.managed_root_path, identity)
        target = os.path.join(info.managed_root_path, job.target_name)
        logger.info("Deploying %s from %s (%s, %s)", identity, job.source_dir,
                    mode.value.lower(), job.trigger.value.lower())

        try:
            copied = await self._transfer(job.source_dir, job.target_name, target, mode)
        except (AuthRejection, DeployError, DeployPreconditionError):
            raise
        except HotDeployError as e:
            raise DeployError(f"transfer failed: {e.detail}", method=e.method, unit_id=identity) from e
        except (OSError, ValueError) as e:
            raise DeployError(f"transfer failed: {safe_text(e)}", unit_id=identity) from e

        secondary: Dict[str, bool] = {}
        for artifact in self.secondary_sets:
            secondary[artifact.name] = await self._deploy_secondary(artifact, job, target, mode)

        first_load = await self._activate(identity)
        result = DeployResult(
            identity=identity,
            target_path=target,
            transfer_mode=mode,
            activated=True,
            first_load=first_load,
            files_copied=copied,
            secondary=secondary,
            duration_seconds=round(time.monotonic() - started, 3),
        )
        logger.info("Deployed %s: %d file(s), %s in %.2fs", identity, copied,
                    "first load" if first_load else "reloaded", result.duration_seconds)
        return result

    def _select_mode(self, managed_root: str, identity: str) -> TransferMode:
        local_ok = os.path.isdir(managed_root)
        remote_ok = self.connection.supports_remote_transfer
        if self.transfer_mode is TransferMode.LOCAL:
            if not local_ok:
                raise DeployPreconditionError(
                    f"managed root {managed_root} is not reachable locally", unit_id=identity)
            return TransferMode.LOCAL
        if self.transfer_mode is TransferMode.REMOTE:
            if not remote_ok:
                raise DeployPreconditionError("host does not support remote transfer", unit_id=identity)
            return TransferMode.REMOTE
        if local_ok:
            return TransferMode.LOCAL
        if remote_ok:
            return TransferMode.REMOTE
        raise DeployPreconditionError(
            f"managed root {managed_root} is not on this filesystem and the host "
            f"does not support remote transfer",
            unit_id=identity,
        )

    async def _transfer(self, source: str, rel_target: str, target: str, mode: TransferMode) -> int:
        if mode is TransferMode.LOCAL:
            return await asyncio.to_thread(transfer.replace_tree, source, target)
        entries = await asyncio.to_thread(transfer.collect_files, source)
        entries = transfer.prefix_entries(entries, rel_target)
        await self.connection.call("removeDir", rel_target, timeout=self.activation_timeout,
                                   unit_id=rel_target.split("/")[0])
        return await self.connection.call("writeFiles", entries, timeout=self.activation_timeout,
                                          unit_id=rel_target.split("/")[0])

    async def _activate(self, identity: str) -> bool:
        """Returns True when the unit had to be registered (first load)."""
        try:
            reloaded = await self.connection.call(
                "reloadUnit", identity, timeout=self.activation_timeout, unit_id=identity)
            if reloaded is not False:
                return False

            logger.info("%s is not registered on the host; loading from directory", identity)
            await self.connection.call(
                "loadDirectoryUnit", identity, timeout=self.activation_timeout, unit_id=identity)
        except AuthRejection:
            raise
        except HotDeployError as e:
            raise DeployError(f"activation failed: {e.detail}", method=e.method, unit_id=identity) from e

        try:
            await self.connection.call("setUnitStatus", identity, True, unit_id=identity)
            await self.connection.call(
                "loadUnitById", identity, timeout=self.activation_timeout, unit_id=identity)
        except AuthRejection:
            raise
        except HotDeployError as e:
            logger.debug("Enable/load after first registration ignored: %s", safe_text(e))
        return True

    async def _deploy_secondary(self, artifact: SecondaryArtifactSet, job: DeployJob,
                                target: str, mode: TransferMode) -> bool:
        try:
            if artifact.build_command:
                await self._run_build(artifact)
            if not os.path.isdir(artifact.source_dir):
                raise FileNotFoundError(f"output directory not found: {artifact.source_dir}")
            subdir = artifact.subdir.replace("\\", "/").strip("/")
            await self._transfer(
                artifact.source_dir,
                f"{job.target_name}/{subdir}",
                os.path.join(target, *subdir.split("/")),
                mode,
            )
        except Exception as e:
            logger.warning("Secondary artifacts %r for %s failed: %s",
                           artifact.name, job.identity, safe_text(e))
            return False
        logger.info("Secondary artifacts %r copied into %s/%s", artifact.name, job.identity, artifact.subdir)
        return True

    async def _run_build(self, artifact: SecondaryArtifactSet) -> None:
        logger.info("Building %s: %s", artifact.name, " ".join(artifact.build_command))
        proc = await asyncio.create_subprocess_exec(
            *artifact.build_command,
            cwd=artifact.build_cwd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        try:
            output, _ = await asyncio.wait_for(proc.communicate(), timeout=SECONDARY_BUILD_TIMEOUT)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise RuntimeError(f"build timed out after {SECONDARY_BUILD_TIMEOUT:g}s")
        if proc.returncode != 0:
            tail = output.decode("utf-8", errors="replace")[-500:]
            raise RuntimeError(f"build exited with {proc.returncode}: {safe_text(tail, 500)}")
