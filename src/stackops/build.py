"""Machine image builds with Packer.

The build runs as a subprocess; its combined output is streamed line by line
to the logger. The produced artifact id is read from a manifest post-processor
(added to JSON templates when missing) or, failing that, from the
"<region>: ami-..." line Packer prints at the end of a build.
"""

from __future__ import annotations

import json
import logging
import os
import re
import signal
import subprocess
import tempfile
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from .artifacts import ArtifactSource

logger = logging.getLogger(__name__)

PACKER_BINARY = "packer"
DEFAULT_BRANCH = "main"

ARTIFACT_LINE_PATTERN = r"^\s*(?:[\w-]+\s*)?[a-z]{2}(?:-gov)?-[a-z]+-\d+:\s+(ami-[0-9a-f]+)\s*$"


class BuildFailed(Exception):
    """Raised when the build tool exits with a non-zero status."""

    def __init__(self, message: str, returncode: int | None = None) -> None:
        super().__init__(message)
        self.returncode = returncode


@dataclass
class BuildResult:
    """Outcome of a build run."""

    command: list[str]
    returncode: int = 0
    artifact_id: str | None = None
    dry_run: bool = False
    output: list[str] = field(default_factory=list)


def image_name(base: str, sha: str, now: datetime | None = None) -> str:
    """"<base>@<short sha> <yymmddHHMMZ>"."""
    now = now or datetime.now(UTC)
    return f"{base}@{sha[:7]} {now.strftime('%y%m%d%H%MZ')}"


def resolve_sha(
    source: ArtifactSource,
    *,
    org_slash_repo: str,
    sha: str | None = None,
    branch: str | None = None,
) -> str:
    """Use the given SHA, or look up the head of the branch."""
    if sha:
        return sha
    return source.sha_for_branch(org_slash_repo=org_slash_repo, branch=branch or DEFAULT_BRANCH)


class PackerBuild:
    """One `packer build` invocation."""

    def __init__(
        self,
        template_path: str | Path,
        *,
        dry_run: bool = True,
        only: Iterable[str] = (),
        variables: Mapping[str, Any] | None = None,
        verbose: bool = False,
        debug: bool = False,
        popen: Callable[..., Any] = subprocess.Popen,
    ) -> None:
        self._template_path = Path(template_path)
        self._dry_run = dry_run
        self._only = list(only)
        self._vars = {str(key): str(value) for key, value in (variables or {}).items()}
        self._verbose = verbose
        self._debug = debug
        self._popen = popen

    def command(self, template_path: str | Path | None = None) -> list[str]:
        cmd = [PACKER_BINARY, "build"]
        if self._only:
            cmd.append(f"--only={','.join(self._only)}")
        for key, value in self._vars.items():
            cmd.extend(["--var", f"{key}={value}"])
        if self._debug:
            cmd.append("--debug")
        cmd.append(str(template_path or self._template_path))
        return cmd

    def environment(self) -> dict[str, str]:
        env = os.environ.copy()
        if self._verbose:
            env["PACKER_LOG"] = "1"
        return env

    def __str__(self) -> str:
        prefix = "PACKER_LOG=1 " if self._verbose else ""
        return prefix + " ".join(self.command())

    def run(self) -> BuildResult:
        """Run the build (or only log it in dry run).

        Raises:
            BuildFailed: If Packer exits with a non-zero status.
        """
        if self._dry_run:
            logger.info("**** DRY RUN ****")
        logger.info("Running build", extra={"command": str(self)})

        if self._dry_run:
            return BuildResult(command=self.command(), dry_run=True)

        with tempfile.TemporaryDirectory(prefix="stackops-packer-") as tmpdir:
            config_path, manifest_path = self._prepare_template(Path(tmpdir))
            command = self.command(config_path)
            result = BuildResult(command=command)

            process = self._popen(
                command,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                env=self.environment(),
            )
            try:
                for line in process.stdout:
                    line = line.rstrip("\n")
                    result.output.append(line)
                    logger.info(line, extra={"source": "packer"})
                    if match := re.match(ARTIFACT_LINE_PATTERN, line):
                        result.artifact_id = match.group(1)
                result.returncode = process.wait()
            except KeyboardInterrupt:
                # Let Packer clean up its temporary resources before exiting
                process.send_signal(signal.SIGINT)
                process.wait()
                raise

            if manifest_path is not None:
                result.artifact_id = _artifact_id_from_manifest(manifest_path) or result.artifact_id

        if result.returncode != 0:
            raise BuildFailed(
                f"Build failed with exit code {result.returncode}", returncode=result.returncode
            )

        logger.info("Build finished", extra={"artifact_id": result.artifact_id})
        return result

    def _prepare_template(self, tmpdir: Path) -> tuple[Path, Path | None]:
        """Add a manifest post-processor to JSON templates that lack one.

        HCL templates are used as they are.
        """
        if self._template_path.suffix != ".json":
            return self._template_path, None

        config = json.loads(self._template_path.read_text(encoding="utf-8"))
        post_processors = config.setdefault("post-processors", [])
        for processor in post_processors:
            if isinstance(processor, dict) and processor.get("type") == "manifest":
                output = processor.get("output", "packer-manifest.json")
                # Packer resolves the output against its working directory
                return self._template_path, Path.cwd() / output

        manifest_path = tmpdir / "manifest.json"
        post_processors.append({"type": "manifest", "output": str(manifest_path)})
        config_path = tmpdir / "packer.json"
        config_path.write_text(json.dumps(config), encoding="utf-8")
        return config_path, manifest_path


def _artifact_id_from_manifest(manifest_path: Path) -> str | None:
    try:
        manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        logger.warning("Could not read build manifest", extra={"manifest": str(manifest_path)})
        return None
    builds = manifest.get("builds") or []
    if not builds:
        return None
    return str(builds[-1].get("artifact_id", "")).split(":", 1)[-1] or None
