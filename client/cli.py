"""hotdeploy: Interactive debug client

    hotdeploy [ws://host:port] [-t TOKEN] [-w DIR] [-W] [-d DIR] [-v]

Connects to the host's debug service, optionally watches unit directories,
and reads operator commands from stdin. Watched directories outside the
host's managed root are redeployed on change; directories inside it (-W)
are only reloaded.

Exit status: 0 on quit or a successful one-shot deploy, 1 on connection or
deploy failure, 2 when the host rejects the token.
"""

from __future__ import annotations
import argparse
import asyncio
import logging
import os
import shlex
import sys
import threading
import time
from typing import Dict, List, Optional

from client.connection import DEFAULT_URL, ConnectionManager
from client.deployer import DeployOrchestrator
from client.watcher import ChangeWatcher, UnitChange
from core.errors import AuthRejection, HotDeployError, ProtocolError
from core.protocol import Notification
from models.models import DeployTrigger

logger = logging.getLogger("hotdeploy.cli")

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_AUTH_REJECTED = 2

HELP_TEXT = """
  Commands:
    list, ls            list units on the host
    reload <id>         reload a unit
    load <id>           load a unit
    unload <id>         unregister a unit
    info <id>           show unit details
    deploy <dir>        deploy a build output directory
    watch [dir]         watch a directory (default: the host's managed root)
    unwatch [name]      stop watching one target, or all
    status              show host status
    ping                round-trip check
    help                this text
    quit, exit, q       leave
"""


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        handlers=[logging.StreamHandler(sys.stderr)],
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="hotdeploy", description="Hot deploy debug client")
    parser.add_argument("url", nargs="?", default=os.environ.get("HOTDEPLOY_URL", DEFAULT_URL),
                        help=f"debug service URL (default: {DEFAULT_URL})")
    parser.add_argument("-t", "--token", default=os.environ.get("HOTDEPLOY_AUTH_TOKEN"),
                        help="auth token (default: $HOTDEPLOY_AUTH_TOKEN)")
    parser.add_argument("-w", "--watch", action="append", default=[], metavar="DIR",
                        help="watch a unit directory, or a directory of units (repeatable)")
    parser.add_argument("-W", "--watch-all", action="store_true",
                        help="watch every unit in the host's managed root")
    parser.add_argument("-d", "--deploy", metavar="DIR",
                        help="deploy DIR once and exit")
    parser.add_argument("--debounce", type=float, default=0.5,
                        help="seconds of quiet before a change triggers (default: 0.5)")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="debug logging and host event echo")
    return parser


def _is_within(path: str, root: str) -> bool:
    path, root = os.path.realpath(path), os.path.realpath(root)
    try:
        return os.path.commonpath([path, root]) == root
    except ValueError:
        return False


def _format_unit_table(units: List[dict]) -> str:
    units = [u for u in units if isinstance(u, dict)]
    if not units:
        return "\n  (no units)\n"
    lines = ["", f"  {'ID':<40}{'VERSION':<12}STATUS", "  " + "-" * 60]
    for unit in units:
        if unit.get("loaded"):
            status = "loaded"
        elif unit.get("enabled"):
            status = unit.get("runtimeStatus") or "enabled"
        else:
            status = "disabled"
        lines.append(f"  {str(unit.get('id')):<40}{str(unit.get('version') or '-'):<12}{status}")
    lines.append("")
    return "\n".join(lines)


def _expect(reply, kind: type, method: str, unit_id: Optional[str] = None):
    if not isinstance(reply, kind):
        raise ProtocolError(f"expected {kind.__name__} from host, got {type(reply).__name__}",
                            method=method, unit_id=unit_id)
    return reply


class DebugCli:
    def __init__(self, args: argparse.Namespace, out=None):
        self.args = args
        self.out = out or sys.stdout
        self.connection = ConnectionManager(args.url, token=args.token, on_event=self._on_event)
        self.deployer = DeployOrchestrator(self.connection)
        self.watcher: Optional[ChangeWatcher] = None
        self._lines: Optional[asyncio.Queue] = None

    def echo(self, text: str = "") -> None:
        print(text, file=self.out, flush=True)

    # --- Entry ---

    async def run(self) -> int:
        try:
            await self.connection.connect()
        except AuthRejection as e:
            logger.error("%s", e)
            return EXIT_AUTH_REJECTED
        except HotDeployError as e:
            logger.error("%s", e)
            return EXIT_FAILURE

        try:
            if self.args.deploy:
                return await self._one_shot_deploy(self.args.deploy)

            for path in self.args.watch:
                self._watch(path)
            if self.args.watch_all:
                self._watch(self.connection.host_info.managed_root_path)

            self.echo(f"Connected to {self.args.url}. Type 'help' for commands.")
            return await self._repl()
        finally:
            if self.watcher is not None:
                self.watcher.stop()
            await self.connection.close()

    async def _one_shot_deploy(self, build_dir: str) -> int:
        try:
            result = await self.deployer.deploy(build_dir)
        except AuthRejection as e:
            logger.error("%s", e)
            return EXIT_AUTH_REJECTED
        except HotDeployError as e:
            logger.error("Deploy failed: %s", e)
            return EXIT_FAILURE
        self.echo(f"Deployed {result.identity} ({'first load' if result.first_load else 'reloaded'})")
        return EXIT_OK

    async def _repl(self) -> int:
        loop = asyncio.get_running_loop()
        self._lines = asyncio.Queue()

        def _read_stdin():
            for raw in iter(sys.stdin.readline, ""):
                loop.call_soon_threadsafe(self._lines.put_nowait, raw)
            loop.call_soon_threadsafe(self._lines.put_nowait, None)

        threading.Thread(target=_read_stdin, name="hotdeploy-stdin", daemon=True).start()

        while True:
            line = await self._lines.get()
            if line is None:
                if self.watcher is not None and self.watcher.targets:
                    # stdin closed while watching: keep serving changes
                    continue
                return EXIT_OK
            try:
                keep_going = await self.handle_command(line)
            except AuthRejection as e:
                logger.error("%s", e)
                return EXIT_AUTH_REJECTED
            if not keep_going:
                return EXIT_AUTH_REJECTED if self.connection.rejected else EXIT_OK

    # --- Commands ---

    async def handle_command(self, line: str) -> bool:
        """Run one command line. Returns False when the operator quits."""
        try:
            words = shlex.split(line)
        except ValueError as e:
            self.echo(f"  parse error: {e}")
            return True
        if not words:
            return True
        cmd, args = words[0].lower(), words[1:]
        if cmd in ("quit", "exit", "q"):
            return False
        if cmd == "help":
            self.echo(HELP_TEXT)
            return True
        if cmd == "unwatch":
            self._unwatch(args[0] if args else None)
            return True

        handler = {
            "list": self._cmd_list, "ls": self._cmd_list,
            "reload": self._cmd_reload, "load": self._cmd_load,
            "unload": self._cmd_unload, "info": self._cmd_info,
            "deploy": self._cmd_deploy, "watch": self._cmd_watch,
            "status": self._cmd_status, "ping": self._cmd_ping,
        }.get(cmd)
        if handler is None:
            self.echo(f"  unknown command: {cmd} (try 'help')")
            return True
        try:
            await self.connection.ensure_connected()
            await handler(args)
        except AuthRejection:
            raise
        except HotDeployError as e:
            self.echo(f"  error: {e}")
        except (OSError, ValueError) as e:
            self.echo(f"  error: {e}")
        except Exception as e:
            logger.exception("Command %r failed", cmd)
            self.echo(f"  error: {type(e).__name__}: {e}")
        return True

    def _need_id(self, args: List[str], cmd: str) -> Optional[str]:
        if not args:
            self.echo(f"  usage: {cmd} <id>")
            return None
        return args[0]

    async def _cmd_list(self, args):
        units = _expect(await self.connection.call("getAllUnits"), list, "getAllUnits")
        self.echo(_format_unit_table(units))

    async def _cmd_reload(self, args):
        unit_id = self._need_id(args, "reload")
        if unit_id is None:
            return
        ok = await self.connection.call("reloadUnit", unit_id, timeout=30.0, unit_id=unit_id)
        self.echo(f"  {unit_id}: {'reloaded' if ok else 'not registered'}")

    async def _cmd_load(self, args):
        unit_id = self._need_id(args, "load")
        if unit_id is None:
            return
        ok = await self.connection.call("loadUnitById", unit_id, timeout=30.0, unit_id=unit_id)
        self.echo(f"  {unit_id}: {'loaded' if ok else 'load failed'}")

    async def _cmd_unload(self, args):
        unit_id = self._need_id(args, "unload")
        if unit_id is None:
            return
        await self.connection.call("unregisterUnit", unit_id, unit_id=unit_id)
        self.echo(f"  {unit_id}: unregistered")

    async def _cmd_info(self, args):
        unit_id = self._need_id(args, "info")
        if unit_id is None:
            return
        info = await self.connection.call("getUnitInfo", unit_id, unit_id=unit_id)
        if info is None:
            self.echo(f"  {unit_id}: not found")
            return
        _expect(info, dict, "getUnitInfo", unit_id)
        self.echo(
            f"\n  ID:       {info.get('id')}\n"
            f"  Name:     {info.get('name') or '-'}\n"
            f"  Version:  {info.get('version') or '-'}\n"
            f"  Path:     {info.get('unitPath')}\n"
            f"  Enabled:  {info.get('enabled')}\n"
            f"  Loaded:   {info.get('loaded')}\n"
            f"  Status:   {info.get('runtimeStatus')}\n"
            + (f"  Error:    {info.get('runtimeError')}\n" if info.get("runtimeError") else "")
        )

    async def _cmd_deploy(self, args):
        if not args:
            self.echo("  usage: deploy <dir>")
            return
        result = await self.deployer.deploy(args[0])
        self.echo(f"  {result.identity}: {'first load' if result.first_load else 'reloaded'} "
                  f"({result.files_copied} files, {result.duration_seconds:.2f}s)")

    async def _cmd_watch(self, args):
        path = args[0] if args else self.connection.host_info.managed_root_path
        targets = self._watch(path)
        self.echo(f"  watching {len(targets)} target(s) under {os.path.abspath(path)}")

    async def _cmd_status(self, args):
        info = _expect(await self.connection.call("getDebugInfo"), dict, "getDebugInfo")
        watching = ", ".join(t.name for t in self.watcher.targets) if self.watcher else ""
        self.echo(
            f"\n  Service:  v{info.get('version')}\n"
            f"  Units:    {info.get('loadedUnits')}/{info.get('totalUnits')} loaded\n"
            f"  Root:     {info.get('managedRootPath')}\n"
            f"  Uptime:   {int(info.get('uptimeSeconds') or 0)}s\n"
            f"  Transfer: {'remote available' if self.connection.supports_remote_transfer else 'local only'}\n"
            f"  Watching: {watching or '-'}\n"
        )

    async def _cmd_ping(self, args):
        started = time.monotonic()
        reply = await self.connection.call("ping")
        self.echo(f"  {reply} ({(time.monotonic() - started) * 1000:.0f} ms)")

    # --- Watching ---

    def _watch(self, path: str):
        if self.watcher is None:
            self.watcher = ChangeWatcher(self._on_change, debounce=self.args.debounce)
        return self.watcher.watch(path)

    def _unwatch(self, name: Optional[str]) -> None:
        if self.watcher is None:
            self.echo("  not watching anything")
            return
        if name is None:
            for target in self.watcher.targets:
                self.watcher.remove_target(target.name)
            self.echo("  stopped all watches")
        elif self.watcher.remove_target(name):
            self.echo(f"  stopped watching {name}")
        else:
            self.echo(f"  not watching {name}")

    async def _on_change(self, change: UnitChange) -> None:
        rel = os.path.relpath(change.path, change.root)
        logger.info("Change detected in %s (%s)", change.name, rel)
        try:
            await self.connection.ensure_connected()
            root = self.connection.host_info.managed_root_path
            if _is_within(change.root, root):
                await self._reload_by_dir(change.name)
            else:
                result = await self.deployer.deploy(change.root, trigger=DeployTrigger.WATCH)
                self.echo(f"  {result.identity}: {'first load' if result.first_load else 'reloaded'}")
        except AuthRejection as e:
            logger.error("%s", e)
            if self._lines is not None:
                self._lines.put_nowait("quit")
        except HotDeployError as e:
            logger.error("Hot reload of %s failed: %s", change.name, e)
        except Exception:
            logger.exception("Hot reload of %s failed", change.name)

    async def _reload_by_dir(self, dir_name: str) -> None:
        units = _expect(await self.connection.call("getAllUnits"), list, "getAllUnits")
        ids: Dict[str, str] = {u.get("fileId"): u.get("id") for u in units if isinstance(u, dict)}
        unit_id = ids.get(dir_name, dir_name)
        ok = await self.connection.call("reloadUnit", unit_id, timeout=30.0, unit_id=unit_id)
        if ok:
            self.echo(f"  {unit_id}: reloaded")
        else:
            logger.warning("%s is not registered on the host; skipping reload", unit_id)

    def _on_event(self, note: Notification) -> None:
        if self.args.verbose:
            logger.debug("Host %s: %s", note.method, note.params)


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging("DEBUG" if args.verbose else "INFO")
    try:
        return asyncio.run(DebugCli(args).run())
    except KeyboardInterrupt:
        return EXIT_OK
