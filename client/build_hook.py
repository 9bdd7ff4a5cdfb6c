"""hotdeploy: Build hook

Glue for build tools that can call Python at build start and after output is
written. The first build connects; every completed build makes sure the
connection is up (one attempt) and deploys the output directory.
"""

from __future__ import annotations
import logging
from typing import List, Optional

from client.connection import DEFAULT_URL, ConnectionManager
from client.deployer import DeployOrchestrator
from core.errors import AuthRejection, HotDeployError
from models.models import DeployResult, DeployTrigger, SecondaryArtifactSet, TransferMode

logger = logging.getLogger("hotdeploy.build_hook")


class BuildHook:
    def __init__(
        self,
        ws_url: str = DEFAULT_URL,
        token: Optional[str] = None,
        enabled: bool = True,
        auto_connect: bool = True,
        watch_mode: bool = False,
        transfer_mode: TransferMode = TransferMode.AUTO,
        secondary_sets: Optional[List[SecondaryArtifactSet]] = None,
        connection: Optional[ConnectionManager] = None,
    ):
        self.enabled = enabled
        self.auto_connect = auto_connect
        self.watch_mode = watch_mode
        self.connection = connection or ConnectionManager(ws_url, token=token)
        self.deployer = DeployOrchestrator(self.connection, transfer_mode=transfer_mode,
                                           secondary_sets=secondary_sets)
        self._started = False
        self.last_result: Optional[DeployResult] = None
        self.last_error: Optional[HotDeployError] = None

    async def build_start(self) -> None:
        if not self.enabled or self._started:
            return
        self._started = True
        if not self.auto_connect:
            return
        try:
            await self.connection.ensure_connected()
        except AuthRejection as e:
            self.last_error = e
            logger.error("Hot deploy disabled: %s", e)
            self.enabled = False
        except HotDeployError as e:
            logger.warning("Could not connect to the debug service: %s", e)

    async def build_complete(self, out_dir: str) -> Optional[DeployResult]:
        """Deploy out_dir. Failures are logged and returned as None, never raised."""
        if not self.enabled:
            return None
        try:
            await self.connection.ensure_connected()
            result = await self.deployer.deploy(out_dir, trigger=DeployTrigger.BUILD)
        except AuthRejection as e:
            self.last_error = e
            logger.error("Hot deploy disabled: %s", e)
            self.enabled = False
            return None
        except HotDeployError as e:
            self.last_error = e
            logger.error("Hot deploy failed: %s", e)
            return None
        self.last_error = None
        self.last_result = result
        return result

    async def close(self) -> None:
        """Tear the connection down, unless the build tool keeps running."""
        if self.watch_mode:
            return
        await self.connection.close()
