from __future__ import annotations

import os
import sys
import shutil
import asyncio
import logging
import tempfile
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple
from urllib.parse import urlparse

import httpx

from ..config import GatewayConfig
from ..errors import BackendUnreachable, ExecutableNotFound
from .health import check_health


logger = logging.getLogger(__name__)

# 停止要求から強制killまでの猶予（秒）
TERMINATE_GRACE_SEC = 5.0


@dataclass
class BackendState:
    """
    バックエンドURLごとの状態。Supervisorだけが書き換える。
    is_starting は「起動処理中」のラッチ。イベントループが1本なので check-then-set で足りる
    （スレッドで並列に触るなら本物のロックが必要）。
    """

    url: str
    is_starting: bool = False
    process: Optional[asyncio.subprocess.Process] = None
    isolated_root: Optional[str] = None


def _candidate_dirs() -> List[str]:
    """PATHに無い場合に探す、パッケージマネージャ/インストーラのbinディレクトリ"""
    home = os.path.expanduser("~")
    dirs = [
        os.path.join(home, ".opencode", "bin"),
        os.path.join(home, ".local", "bin"),
        os.path.join(home, ".bun", "bin"),
        os.path.join(home, ".npm-global", "bin"),
        os.path.join(home, ".volta", "bin"),
        os.path.join(home, ".yarn", "bin"),
        os.path.join(home, "go", "bin"),
    ]
    if sys.platform == "win32":
        for env_name, sub in (
            ("APPDATA", "npm"),
            ("LOCALAPPDATA", os.path.join("Programs", "opencode")),
            ("LOCALAPPDATA", "pnpm"),
            ("USERPROFILE", os.path.join("scoop", "shims")),
        ):
            base = os.environ.get(env_name)
            if base:
                dirs.append(os.path.join(base, sub))
    else:
        dirs += [
            "/opt/homebrew/bin",
            "/usr/local/bin",
            "/home/linuxbrew/.linuxbrew/bin",
            "/usr/bin",
            "/snap/bin",
        ]
    return dirs


def _looks_like_path(value: str) -> bool:
    return (
        os.sep in value
        or "/" in value
        or value.startswith("~")
        or value.startswith(".")
        or (sys.platform == "win32" and ":" in value)
    )


def resolve_executable(configured: str, extra_dirs: Optional[List[str]] = None) -> str:
    """
    opencode の実行ファイルを探す。
    1) パスっぽい指定で実在するならそれ
    2) PATH
    3) よくあるbinディレクトリ
    見つからなければ設定値をそのまま返す（起動時にはっきり失敗させる）
    """
    configured = (configured or "opencode").strip()

    if _looks_like_path(configured):
        expanded = os.path.abspath(os.path.expanduser(configured))
        if os.path.isfile(expanded):
            return expanded

    name = os.path.basename(configured)

    found = shutil.which(name)
    if found:
        return found

    dirs = [d for d in (extra_dirs or []) + _candidate_dirs() if os.path.isdir(d)]
    if dirs:
        found = shutil.which(name, path=os.pathsep.join(dirs))
        if found:
            return found

    return configured


def parse_host_port(url: str) -> Tuple[str, int]:
    parsed = urlparse(url)
    host = parsed.hostname or "127.0.0.1"
    port = parsed.port or (443 if parsed.scheme == "https" else 4097)
    return host, port


class BackendSupervisor:
    """
    opencode serve プロセスの面倒を見る。
    ensure() が成功で返った時点で、バックエンドに到達できることを保証する。
    """

    def __init__(
        self,
        config: GatewayConfig,
        client: httpx.AsyncClient,
        state: Optional[BackendState] = None,
    ) -> None:
        self.config = config
        self.client = client
        self.state = state or BackendState(url=config.backend_url)
        # 起動待ちのヘルスチェック間隔と回数（合計で startup_timeout 程度）
        self.interval = config.health_interval
        self.attempts = config.startup_attempts
        self._watchers: Dict[int, asyncio.Task] = {}

    @property
    def url(self) -> str:
        return self.state.url

    # ---- 公開API ----

    async def ensure(self) -> None:
        """
        バックエンドが生きていればすぐ返る（安い経路）。
        死んでいれば起動して healthy になるまで待つ。
        他のリクエストが起動中なら、2つ目は起動せずヘルスチェックで待つだけ。
        """
        if self.state.is_starting:
            logger.info(f"Backend start already in progress for {self.url}, waiting...")
            await self._wait_healthy()
            return

        try:
            await check_health(self.client, self.url)
            return
        except BackendUnreachable as e:
            logger.info(f"OpenCode backend not available at {self.url} ({e}). Starting it...")

        # ヘルスチェック中に別のリクエストが起動を始めていたら、そちらを待つ
        if self.state.is_starting:
            await self._wait_healthy()
            return

        self.state.is_starting = True
        try:
            await self._start()
            await self._wait_healthy(self.state.process)
            logger.info("OpenCode backend successfully started.")
        except ExecutableNotFound:
            raise
        except BackendUnreachable:
            logger.warning("Backend start failed or timed out, requests might fail.")
            raise
        finally:
            self.state.is_starting = False

    async def stop(self) -> None:
        """自分が起動したプロセスを止めて、隔離ディレクトリを消す"""
        proc = self.state.process
        self.state.process = None
        if proc is not None:
            await self._terminate(proc)
        self._remove_isolated_root()

    # ---- 内部処理 ----

    async def _wait_healthy(self, proc: Optional[asyncio.subprocess.Process] = None) -> None:
        """
        healthy になるまでポーリングする。
        proc を渡した場合、そのプロセスが起動途中で終了したら待たずに失敗させる。
        """
        for i in range(self.attempts):
            await asyncio.sleep(self.interval)
            try:
                await check_health(self.client, self.url)
                return
            except BackendUnreachable as e:
                logger.debug(f"Waiting for backend ({i + 1}/{self.attempts}): {e}")
            if proc is not None and proc.returncode is not None:
                raise BackendUnreachable(
                    f"OpenCode backend exited during startup (pid={proc.pid}, code={proc.returncode})"
                )
        raise BackendUnreachable(
            f"OpenCode backend did not become healthy within {self.interval * self.attempts:.0f}s"
        )

    async def _start(self) -> None:
        # 古いプロセスと前回の隔離ディレクトリは必ず片付けてから起動する
        stale = self.state.process
        self.state.process = None
        if stale is not None:
            logger.info(f"Terminating stale backend process (pid={stale.pid})")
            await self._terminate(stale)
        self._remove_isolated_root()

        executable = resolve_executable(self.config.opencode_path)
        work_dir, env = self._build_isolated_env()
        host, port = parse_host_port(self.url)

        cmd = [executable, "serve", "--port", str(port), "--hostname", host]
        if sys.platform == "win32" and executable.lower().endswith((".cmd", ".bat")):
            # npmのシム（.cmd）は直接execできない
            cmd = ["cmd", "/c"] + cmd

        logger.info(f"Spawning backend: {' '.join(cmd)} (cwd={work_dir})")
        try:
            # stdioは継承（バックエンドのログがそのまま見える）
            proc = await self._spawn(cmd, work_dir, env)
        except (FileNotFoundError, PermissionError) as e:
            self._remove_isolated_root()
            logger.error(
                f"Could not start '{executable}': {e}. "
                "Install OpenCode (npm i -g opencode-ai) or set OPENCODE_PATH to the full path of the binary."
            )
            raise ExecutableNotFound(f"OpenCode executable not found: {executable}") from e

        self.state.process = proc
        self._watchers[proc.pid] = asyncio.create_task(self._watch(proc))

    async def _spawn(self, cmd: List[str], cwd: str, env: Dict[str, str]) -> asyncio.subprocess.Process:
        return await asyncio.create_subprocess_exec(*cmd, cwd=cwd, env=env)

    def _build_isolated_env(self) -> Tuple[str, Dict[str, str]]:
        """
        毎回新しい一時ディレクトリを作り、作業ディレクトリ（と必要ならHOME）にする。
        バックエンドがgateway自身のソースや利用者の本物のプロファイルを触れないようにする。
        """
        root = tempfile.mkdtemp(prefix="opencode-gateway-")
        self.state.isolated_root = root

        work_dir = os.path.join(root, "work")
        os.makedirs(work_dir, exist_ok=True)

        env = dict(os.environ)
        if self.config.isolate_home:
            home = os.path.join(root, "home")
            for sub in (".config", ".local/share", ".cache", ".local/state"):
                os.makedirs(os.path.join(home, sub), exist_ok=True)
            env.update(
                {
                    "HOME": home,
                    "USERPROFILE": home,
                    "XDG_CONFIG_HOME": os.path.join(home, ".config"),
                    "XDG_DATA_HOME": os.path.join(home, ".local", "share"),
                    "XDG_CACHE_HOME": os.path.join(home, ".cache"),
                    "XDG_STATE_HOME": os.path.join(home, ".local", "state"),
                }
            )
        return work_dir, env

    def _remove_isolated_root(self) -> None:
        root = self.state.isolated_root
        self.state.isolated_root = None
        if root and os.path.isdir(root):
            shutil.rmtree(root, ignore_errors=True)

    async def _watch(self, proc: asyncio.subprocess.Process) -> None:
        """プロセス終了を見張る。今の世代のプロセスなら状態を片付ける"""
        try:
            code = await proc.wait()
        finally:
            self._watchers.pop(proc.pid, None)
        if self.state.process is proc:
            logger.warning(f"OpenCode backend exited (pid={proc.pid}, code={code})")
            self.state.process = None
            self._remove_isolated_root()

    async def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is not None:
            return
        try:
            proc.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=TERMINATE_GRACE_SEC)
        except asyncio.TimeoutError:
            logger.warning(f"Backend (pid={proc.pid}) did not exit, killing it")
            try:
                proc.kill()
            except ProcessLookupError:
                return
            await proc.wait()
