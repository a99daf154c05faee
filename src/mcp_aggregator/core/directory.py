"""
External collaborators of the aggregation core.

``ProcessDirectory`` answers which downstream servers are running.
``ConfigurationStore`` answers how to reach or start one of them.
Both are read-only from the aggregator's point of view.
"""

import asyncio
import json
import os
import shlex
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from mcp_aggregator.core.exceptions import ConfigError, DirectoryError
from mcp_aggregator.core.models import DownstreamServer, LaunchParams, Liveness
from mcp_aggregator.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_RUN_COMMAND = "npm run start"
INHERITED_ENV_VARS = ["PATH", "NODE_ENV", "HOME", "USER"]


class ConfigurationStore:
    """
    Read side of the installed-server registry (``configuration.json``).

    Server entries live at the root of the document or under ``installed``;
    each may carry ``source``, ``run``, ``env`` and ``socketPath`` (legacy
    key ``transport``).
    """

    def __init__(self, path: Union[str, Path], data_dir: Optional[Union[str, Path]] = None):
        self.path = Path(path)
        self.data_dir = Path(data_dir) if data_dir else self.path.parent

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise ConfigError(
                f"Could not read configuration store {self.path}: {e}",
                error_code="CONFIG_UNREADABLE",
            ) from e
        if not isinstance(data, dict):
            raise ConfigError(f"Configuration store {self.path} is not a JSON object")
        return data

    def _find_entry(self, data: Dict[str, Any], name: str) -> Optional[Dict[str, Any]]:
        entry = data.get(name)
        if isinstance(entry, dict):
            return entry
        installed = data.get("installed")
        if isinstance(installed, dict) and isinstance(installed.get(name), dict):
            return installed[name]
        return None

    def list_server_names(self) -> List[str]:
        """Names of every configured server."""
        data = self._read()
        names = {key for key, value in data.items() if "/" in key and isinstance(value, dict)}
        installed = data.get("installed")
        if isinstance(installed, dict):
            names.update(key for key, value in installed.items() if isinstance(value, dict))
        return sorted(names)

    def default_socket_path(self, name: str) -> Path:
        return self.data_dir / "transport" / f"mcp_{name.replace('/', '-')}.sock"

    def get_launch_params(self, name: str) -> LaunchParams:
        """
        Resolve launch parameters for a server.

        Raises:
            ConfigError: No entry for ``name`` or the store is unreadable.
        """
        entry = self._find_entry(self._read(), name)
        if entry is None:
            raise ConfigError(
                f"[{name}] Configuration not found",
                error_code="SERVER_NOT_CONFIGURED",
                details={"server": name},
            )

        source = entry.get("source")
        if source:
            working_directory = Path(os.path.expanduser(source))
            if not working_directory.is_absolute():
                working_directory = self.data_dir / working_directory
        else:
            owner, _, repo = name.partition("/")
            if owner and repo:
                working_directory = self.data_dir / "installed" / owner / repo
            else:
                working_directory = self.data_dir / "installed" / name

        environment = {key: os.environ[key] for key in INHERITED_ENV_VARS if os.environ.get(key)}
        for key, value in (entry.get("env") or {}).items():
            if value is not None:
                environment[key] = str(value)

        try:
            command_line = shlex.split(entry.get("run") or DEFAULT_RUN_COMMAND)
        except ValueError as e:
            raise ConfigError(f"[{name}] Invalid run command: {e}", error_code="INVALID_RUN") from e
        if not command_line:
            command_line = shlex.split(DEFAULT_RUN_COMMAND)

        socket_path = entry.get("socketPath") or entry.get("transport")
        if not isinstance(socket_path, str):
            socket_path = str(self.default_socket_path(name))

        return LaunchParams(
            command=command_line[0],
            args=command_line[1:],
            working_directory=str(working_directory),
            environment=environment,
            socket_path=socket_path,
        )


class ProcessDirectory(ABC):
    """Answers which downstream servers exist and whether they are Online."""

    @abstractmethod
    async def list_servers(self, name: str = "all") -> List[DownstreamServer]:
        """
        List servers, or only the one called ``name``.

        Raises:
            DirectoryError: The directory could not be queried.
        """
        ...

    async def get_server(self, name: str) -> Optional[DownstreamServer]:
        for server in await self.list_servers(name):
            if server.name == name:
                return server
        return None

    async def is_online(self, name: str) -> bool:
        server = await self.get_server(name)
        return server is not None and server.is_online

    async def online_names(self) -> List[str]:
        return sorted(s.name for s in await self.list_servers() if s.is_online)


class StaticProcessDirectory(ProcessDirectory):
    """In-memory directory, mutated by the embedding application."""

    def __init__(self, servers: Optional[Dict[str, bool]] = None):
        self._servers: Dict[str, DownstreamServer] = {}
        for name, online in (servers or {}).items():
            if online:
                self.set_online(name)
            else:
                self.set_offline(name)

    def set_online(self, name: str, pid: Optional[int] = None) -> None:
        self._servers[name] = DownstreamServer(name=name, liveness=Liveness.ONLINE, pid=pid)

    def set_offline(self, name: str) -> None:
        self._servers[name] = DownstreamServer(name=name, liveness=Liveness.OFFLINE)

    def remove(self, name: str) -> None:
        self._servers.pop(name, None)

    async def list_servers(self, name: str = "all") -> List[DownstreamServer]:
        if name == "all":
            return [s.model_copy() for s in self._servers.values()]
        server = self._servers.get(name)
        return [server.model_copy()] if server else []


class StateFileProcessDirectory(ProcessDirectory):
    """
    Reads the process supervisor's state file.

    The file maps server names to ``{"pid": ..., "status": ...}`` plus
    optional ``memory``/``cpu``/``uptime``. A server is Online when its
    status is ``online`` and its pid is a live process. Servers known only
    to the configuration store are reported Offline.
    """

    def __init__(
        self,
        state_path: Union[str, Path],
        configuration_store: Optional[ConfigurationStore] = None,
        cache_ttl: float = 0.5,
    ):
        self.state_path = Path(state_path)
        self.configuration_store = configuration_store
        self.cache_ttl = cache_ttl
        self._cache: Optional[List[DownstreamServer]] = None
        self._cache_time = 0.0

    async def list_servers(self, name: str = "all") -> List[DownstreamServer]:
        now = time.monotonic()
        if self._cache is None or now - self._cache_time > self.cache_ttl:
            self._cache = await asyncio.to_thread(self._snapshot)
            self._cache_time = now

        if name == "all":
            return list(self._cache)
        return [s for s in self._cache if s.name == name]

    def invalidate(self) -> None:
        self._cache = None

    def _snapshot(self) -> List[DownstreamServer]:
        state = self._read_state()
        servers: Dict[str, DownstreamServer] = {}

        for server_name, info in state.items():
            if not isinstance(info, dict):
                continue
            pid = info.get("pid")
            pid = pid if isinstance(pid, int) and pid > 0 else None
            online = str(info.get("status", "")).lower() == "online" and pid is not None and _pid_alive(pid)
            servers[server_name] = DownstreamServer(
                name=server_name,
                liveness=Liveness.ONLINE if online else Liveness.OFFLINE,
                pid=pid if online else None,
                memory=_text(info.get("memory")),
                cpu=_text(info.get("cpu")),
                uptime=_text(info.get("uptime")),
            )

        if self.configuration_store is not None:
            try:
                configured = self.configuration_store.list_server_names()
            except ConfigError as e:
                logger.warning(f"Could not list configured servers: {e}")
                configured = []
            for server_name in configured:
                servers.setdefault(server_name, DownstreamServer(name=server_name))

        return [servers[n] for n in sorted(servers)]

    def _read_state(self) -> Dict[str, Any]:
        if not self.state_path.exists():
            return {}
        try:
            with open(self.state_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise DirectoryError(
                f"Could not read process state {self.state_path}: {e}",
                error_code="STATE_UNREADABLE",
            ) from e
        if not isinstance(data, dict):
            raise DirectoryError(f"Process state {self.state_path} is not a JSON object")
        return data


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _text(value: Any) -> Optional[str]:
    return None if value is None else str(value)
