from __future__ import annotations

import queue
import subprocess
import threading
import time
from typing import Any, Callable, Iterable

import structlog

from docker_mirror.credentials import DockerCredentials
from docker_mirror.errors import DockerError


logger = structlog.get_logger(__name__)

_EOF = object()

# registry tokens such as ECR expire after 12h
LOGIN_TTL_SEC = 6 * 3600.0


class DockerCli:
    """Thin client over the ``docker`` command line."""

    def __init__(
        self,
        binary: str = "docker",
        inactivity_timeout_sec: float = 60.0,
        login_ttl_sec: float = LOGIN_TTL_SEC,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.binary = binary
        self.inactivity_timeout_sec = inactivity_timeout_sec
        self.login_ttl_sec = login_ttl_sec
        self._clock = clock
        self._logged_in: dict[tuple[str, str, str], float] = {}
        self._login_lock = threading.Lock()

    def info(self) -> str:
        result = subprocess.run(
            [self.binary, "info", "--format", "{{.Name}} @ {{.ServerVersion}}"],
            check=False,
            capture_output=True,
            text=True,
        )
        if result.returncode != 0:
            raise DockerError(
                f"Could not get Docker info: {result.stderr.strip() or result.stdout.strip()}",
                return_code=result.returncode,
            )
        return result.stdout.strip()

    def login(self, registry: str | None, credentials: DockerCredentials, log: Any = None) -> None:
        key = (registry or "", credentials.username, credentials.password)
        with self._login_lock:
            logged_in_at = self._logged_in.get(key)
            if logged_in_at is not None and self._clock() - logged_in_at < self.login_ttl_sec:
                return
            command = [self.binary, "login", "--username", credentials.username, "--password-stdin"]
            if registry:
                command.append(registry)
            self._run_command(command, log, stdin=credentials.password)
            self._logged_in[key] = self._clock()

    def pull(self, repository: str, tag: str, log: Any = None) -> None:
        self._run_command([self.binary, "pull", f"{repository}:{tag}"], log)

    def tag(self, source: str, target: str, log: Any = None) -> None:
        self._run_command([self.binary, "tag", source, target], log)

    def push(self, repository: str, tag: str, log: Any = None) -> None:
        self._run_command([self.binary, "push", f"{repository}:{tag}"], log)

    def remove(self, image: str, log: Any = None) -> None:
        self._run_command([self.binary, "image", "rm", image], log)

    def _run_command(self, command: Iterable[str], log: Any = None, stdin: str | None = None) -> None:
        cmd_list = list(command)
        printable = " ".join(cmd_list)
        log = (log or logger).bind(docker_action=cmd_list[1] if len(cmd_list) > 1 else cmd_list[0])
        log.debug("Running docker command", command=printable)

        try:
            process = subprocess.Popen(
                cmd_list,
                stdin=subprocess.PIPE if stdin is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                bufsize=1,
            )
        except OSError as exc:
            raise DockerError(f"Command failed to start: {printable}: {exc}") from exc

        if stdin is not None and process.stdin is not None:
            try:
                process.stdin.write(stdin)
                process.stdin.close()
            except OSError as exc:
                process.kill()
                process.wait()
                raise DockerError(f"Could not write to command input: {printable}: {exc}") from exc

        lines: queue.Queue[object] = queue.Queue()

        def pump() -> None:
            assert process.stdout is not None
            for line in process.stdout:
                lines.put(line)
            lines.put(_EOF)

        reader = threading.Thread(target=pump, daemon=True)
        reader.start()

        while True:
            try:
                line = lines.get(timeout=self.inactivity_timeout_sec)
            except queue.Empty:
                process.kill()
                process.wait()
                raise DockerError(
                    f"Command produced no output for {self.inactivity_timeout_sec:.0f}s: {printable}"
                )
            if line is _EOF:
                break
            cleaned = str(line).rstrip()
            if cleaned:
                log.debug(cleaned)

        return_code = process.wait()
        reader.join()
        if return_code != 0:
            raise DockerError(f"Command failed ({return_code}): {printable}", return_code=return_code)
