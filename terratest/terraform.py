"""Terraform CLI runner: init, apply, output and destroy with retry."""
from __future__ import annotations

import json
import logging
import os
import shutil
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .config import HarnessSettings
from .errors import ToolError
from .ledger import step_span
from .retry import DEFAULT_TRANSIENT_SIGNATURES, TransientSignature, classify_tool_failure, retry_transient


@dataclass(frozen=True)
class CommandResult:
    """Exit code and combined stdout/stderr of one command."""
    exit_code: int
    output: str
    duration: float


def copy_template(template_path: Path, workdir: Path) -> Path:
    """Copy a template into a private working directory."""
    dst = workdir / template_path.name
    shutil.copytree(template_path, dst, ignore=shutil.ignore_patterns(".terraform", "*.tfstate*"))
    return dst


def terraform_env(base: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """Build environment vars for non-interactive Terraform runs."""
    env = dict(os.environ if base is None else base)
    env["TF_IN_AUTOMATION"] = "1"
    env["TF_INPUT"] = "0"
    worker = os.getenv("PYTEST_XDIST_WORKER", "main")
    plugin_cache = Path.home() / ".terraform.d" / f"plugin-cache-{worker}"
    plugin_cache.mkdir(parents=True, exist_ok=True)
    env.setdefault("TF_PLUGIN_CACHE_DIR", str(plugin_cache))
    env.setdefault("TF_REGISTRY_CLIENT_TIMEOUT", "30")
    return env


def format_var_args(variables: Mapping[str, str]) -> List[str]:
    """Render a variables mapping as -var arguments."""
    args = []
    for key in sorted(variables):
        args.extend(["-var", f"{key}={variables[key]}"])
    return args


def parse_outputs(raw: str) -> Dict[str, Any]:
    """Flatten `terraform output -json` into name -> value."""
    if not raw.strip():
        return {}
    data = json.loads(raw)
    return {name: item.get("value") for name, item in data.items()}


class TerraformRunner:
    """Runs the Terraform CLI against template directories."""

    def __init__(
        self,
        binary: str = "terraform",
        env: Optional[Mapping[str, str]] = None,
        logger: Optional[logging.Logger] = None,
        timeout_seconds: Optional[int] = None,
        max_attempts: int = 3,
        retry_delay_seconds: float = 10.0,
        retry_backoff: str = "fixed",
        signatures: Sequence[TransientSignature] = DEFAULT_TRANSIENT_SIGNATURES,
    ) -> None:
        self.binary = binary
        self.env = dict(env) if env is not None else terraform_env()
        self.logger = logger or logging.getLogger(__name__)
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max_attempts
        self.retry_delay_seconds = retry_delay_seconds
        self.retry_backoff = retry_backoff
        self.signatures = tuple(signatures)

    @classmethod
    def from_settings(
        cls, settings: HarnessSettings, logger: Optional[logging.Logger] = None
    ) -> "TerraformRunner":
        return cls(
            binary=settings.terraform_binary,
            logger=logger,
            timeout_seconds=settings.command_timeout_seconds,
            max_attempts=settings.max_attempts,
            retry_delay_seconds=settings.retry_delay_seconds,
            retry_backoff=settings.retry_backoff,
        )

    def _run_command(self, args: List[str], cwd: Path, label: str) -> CommandResult:
        """Run a command and capture stdout/stderr."""
        cmd = [self.binary, *args]
        start = time.perf_counter()
        try:
            result = subprocess.run(
                cmd,
                cwd=str(cwd),
                env=self.env,
                capture_output=True,
                text=True,
                check=False,
                timeout=self.timeout_seconds,
            )
        except subprocess.TimeoutExpired as exc:
            duration = time.perf_counter() - start
            raise ToolError(label, -1, f"timed out after {duration:.2f}s") from exc
        duration = time.perf_counter() - start
        output = ""
        if result.stdout:
            output += result.stdout
        if result.stderr:
            if output:
                output += "\n"
            output += result.stderr
        self.logger.info("%s took %.2fs (exit code %d)", label, duration, result.returncode)
        return CommandResult(exit_code=result.returncode, output=output.strip(), duration=duration)

    def run(self, args: List[str], cwd: Path, label: str, attempt: int = 1) -> CommandResult:
        """Run a Terraform command; raise a classified ToolError on failure."""
        with step_span(label, attempt=attempt):
            result = self._run_command(args, cwd, label)
            if result.exit_code != 0:
                raise classify_tool_failure(label, result.exit_code, result.output, self.signatures)
        return result

    def init(
        self,
        path: Path,
        backend_config: Optional[Mapping[str, str]] = None,
        reconfigure: bool = False,
        attempt: int = 1,
    ) -> CommandResult:
        """Run terraform init."""
        args = ["init", "-input=false"]
        if reconfigure:
            args.append("-reconfigure")
        for key in sorted(backend_config or {}):
            args.append(f"-backend-config={key}={backend_config[key]}")
        return self.run(args, Path(path), "terraform init", attempt=attempt)

    def output(self, path: Path) -> Dict[str, Any]:
        """Return the template's outputs."""
        result = self.run(["output", "-json"], Path(path), "terraform output")
        return parse_outputs(result.output)

    def _apply_once(self, path: Path, variables: Mapping[str, str], attempt: int) -> Dict[str, Any]:
        path = Path(path)
        self.init(path, attempt=attempt)
        self.run(
            ["apply", "-input=false", "-auto-approve", *format_var_args(variables)],
            path,
            "terraform apply",
            attempt=attempt,
        )
        return self.output(path)

    def apply(self, path: Path, variables: Mapping[str, str]) -> Dict[str, Any]:
        """Apply the template once and return its outputs."""
        self.logger.info("Running terraform apply in %s", path)
        return self._apply_once(path, variables, attempt=1)

    def apply_and_get_output_with_retry(
        self,
        path: Path,
        variables: Mapping[str, str],
        max_attempts: Optional[int] = None,
        sleep=time.sleep,
    ) -> Dict[str, Any]:
        """Apply the template, retrying failures that match a transient signature."""
        attempts = {"count": 0}

        def _attempt() -> Dict[str, Any]:
            attempts["count"] += 1
            self.logger.info("Running terraform apply in %s (attempt %d)", path, attempts["count"])
            return self._apply_once(path, variables, attempt=attempts["count"])

        return retry_transient(
            _attempt,
            max_attempts=self.max_attempts if max_attempts is None else max_attempts,
            delay_seconds=self.retry_delay_seconds,
            backoff=self.retry_backoff,
            logger=self.logger,
            description="terraform apply",
            sleep=sleep,
        )

    def destroy(self, path: Path, variables: Mapping[str, str]) -> None:
        """Destroy everything the template created."""
        path = Path(path)
        self.logger.info("Running terraform destroy in %s", path)
        self.init(path)
        self.run(
            ["destroy", "-input=false", "-auto-approve", *format_var_args(variables)],
            path,
            "terraform destroy",
        )
