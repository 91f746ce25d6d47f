"""Benchmark Runner for invoking the Powerpipe benchmark engine.

This module provides the boundary to the external benchmark engine:
- Mapping (framework, provider) pairs to Powerpipe benchmark identifiers
- Translating a credential bundle into engine environment variables
- Executing ``powerpipe benchmark run`` inside the engine container with a
  per-invocation timeout
- Extracting the JSON document from the engine's textual output
- Discovering which benchmarks the engine has installed
"""

import asyncio
import base64
import logging
import re
import weakref
from types import MappingProxyType
from typing import Any, Mapping, Optional, Sequence

from pydantic import BaseModel, Field

from app.config import Settings, get_settings
from app.services.credential_store import ActiveCredential
from app.services.output_normalizer import BenchmarkOutputError, extract_json_payload

logger = logging.getLogger(__name__)

# Powerpipe exits 1 or 2 when a benchmark completes with alarms or errors
NORMAL_EXIT_CODES = (0, 1, 2)

DISCOVERY_TIMEOUT_SECONDS = 10

# The Steampipe AWS connection file is shared by every run in the container;
# AWS runs hold this lock from writing it until the benchmark exits
_AWS_CONNECTION_LOCKS: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, asyncio.Lock]" = (
    weakref.WeakKeyDictionary()
)


def aws_connection_lock() -> asyncio.Lock:
    """Return the AWS connection lock of the running event loop."""
    loop = asyncio.get_running_loop()
    lock = _AWS_CONNECTION_LOCKS.get(loop)
    if lock is None:
        lock = _AWS_CONNECTION_LOCKS[loop] = asyncio.Lock()
    return lock

# Benchmark names vary by Powerpipe mod version
FRAMEWORK_TO_BENCHMARK: Mapping[str, Mapping[str, str]] = MappingProxyType({
    "aws": MappingProxyType({
        "HIPAA": "aws_compliance.benchmark.hipaa_security_rule_2003",
        "SOC2": "aws_compliance.benchmark.soc_2",
        "ISO27001": "aws_compliance.benchmark.iso_27001",
        "CIS": "aws_compliance.benchmark.cis_v140",
        "NIST": "aws_compliance.benchmark.nist_800_53_rev_5",
        "PCI-DSS": "aws_compliance.benchmark.pci_dss_v321",
        "GDPR": "aws_compliance.benchmark.gdpr",
        "FedRAMP": "aws_compliance.benchmark.fedramp_moderate_rev_4",
    }),
    "azure": MappingProxyType({
        "HIPAA": "azure_compliance.benchmark.hipaa",
        "SOC2": "azure_compliance.benchmark.soc_2",
        "ISO27001": "azure_compliance.benchmark.iso_27001",
        "CIS": "azure_compliance.benchmark.cis_v200",
        "NIST": "azure_compliance.benchmark.nist_800_53_rev_5",
        "PCI-DSS": "azure_compliance.benchmark.pci_dss_v321",
    }),
    "gcp": MappingProxyType({
        "HIPAA": "gcp_compliance.benchmark.hipaa",
        "SOC2": "gcp_compliance.benchmark.soc_2",
        "ISO27001": "gcp_compliance.benchmark.iso_27001",
        "CIS": "gcp_compliance.benchmark.cis_v200",
        "NIST": "gcp_compliance.benchmark.nist_800_53_rev_5",
    }),
})

# Order matters: "soc" must not swallow names that mention other frameworks first
FRAMEWORK_NAME_HINTS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("HIPAA", ("hipaa",)),
    ("SOC2", ("soc_2", "soc2")),
    ("ISO27001", ("iso_27001", "iso27001")),
    ("CIS", ("cis",)),
    ("NIST", ("nist",)),
    ("PCI-DSS", ("pci_dss", "pci")),
    ("GDPR", ("gdpr",)),
    ("FedRAMP", ("fedramp",)),
)

# Credential bundle key -> engine environment variable, per provider
CREDENTIAL_ENV_KEYS: Mapping[str, tuple[tuple[str, str], ...]] = MappingProxyType({
    "aws": (
        ("access_key_id", "AWS_ACCESS_KEY_ID"),
        ("secret_access_key", "AWS_SECRET_ACCESS_KEY"),
        ("session_token", "AWS_SESSION_TOKEN"),
        ("region", "AWS_DEFAULT_REGION"),
    ),
    "azure": (
        ("client_id", "AZURE_CLIENT_ID"),
        ("client_secret", "AZURE_CLIENT_SECRET"),
        ("tenant_id", "AZURE_TENANT_ID"),
        ("subscription_id", "AZURE_SUBSCRIPTION_ID"),
    ),
    "gcp": (
        ("project_id", "GCP_PROJECT"),
    ),
})

GCP_CREDENTIALS_PATH = "/tmp/gcp-credentials.json"
STEAMPIPE_AWS_CONFIG_PATH = "/home/steampipe/.steampipe/config/aws.spc"

BENCHMARK_NAME_PATTERN = re.compile(r"(\w+_compliance\.benchmark\.\w+)")


# Pydantic Models

class BenchmarkInfo(BaseModel):
    """A benchmark installed in the engine.

    Attributes:
        name: Fully-qualified benchmark identifier.
        provider: Provider inferred from the benchmark's mod name.
        framework: Framework inferred from the benchmark name, if recognizable.
        control_count: Number of controls, when the engine reports it.
    """
    name: str = Field(..., description="Benchmark identifier")
    provider: str = Field(default="unknown", description="Cloud provider")
    framework: Optional[str] = Field(default=None, description="Compliance framework")
    control_count: Optional[int] = Field(default=None, description="Number of controls")


# Custom Exceptions for Engine Invocation Errors

class BenchmarkExecutionError(Exception):
    """Base exception for benchmark engine invocation errors."""
    pass


class EngineUnavailableError(BenchmarkExecutionError):
    """Raised when the engine binary or container cannot be reached."""
    def __init__(self, message: str = "Benchmark engine is unavailable. Verify the engine container is running."):
        super().__init__(message)


class BenchmarkTimeoutError(BenchmarkExecutionError):
    """Raised when a single benchmark invocation exceeds its time limit."""
    def __init__(self, benchmark: str, timeout_seconds: float):
        message = f"Benchmark '{benchmark}' did not finish within {timeout_seconds:.0f} seconds"
        super().__init__(message)
        self.benchmark = benchmark
        self.timeout_seconds = timeout_seconds


class BenchmarkCommandError(BenchmarkExecutionError):
    """Raised when the engine exits abnormally or produces no output."""
    def __init__(self, benchmark: str, exit_code: Optional[int], stderr: str):
        message = f"Benchmark '{benchmark}' failed with exit code {exit_code}: {stderr.strip()[:500]}"
        super().__init__(message)
        self.benchmark = benchmark
        self.exit_code = exit_code
        self.stderr = stderr


# Pure helpers

def get_benchmark_name(
    framework: str,
    provider: str,
    mapping: Mapping[str, Mapping[str, str]] = FRAMEWORK_TO_BENCHMARK,
) -> Optional[str]:
    """Look up the benchmark for a framework on a provider.

    Returns None when no benchmark exists; callers skip such pairs.
    """
    provider_map = mapping.get(provider.lower())
    if not provider_map:
        return None
    return provider_map.get(framework)


def infer_framework(benchmark_name: str) -> Optional[str]:
    """Infer the framework key from a benchmark identifier."""
    lowered = benchmark_name.lower()
    for framework, hints in FRAMEWORK_NAME_HINTS:
        if any(hint in lowered for hint in hints):
            return framework
    return None


def infer_provider(benchmark_name: str) -> str:
    """Infer the provider from a benchmark identifier's mod prefix."""
    for provider in FRAMEWORK_TO_BENCHMARK:
        if f"{provider}_compliance" in benchmark_name:
            return provider
    return "unknown"


def build_credential_env(provider: str, bundle: Mapping[str, Any]) -> dict[str, str]:
    """Translate a credential bundle into engine environment variables."""
    provider = provider.lower()
    env: dict[str, str] = {}
    for bundle_key, env_key in CREDENTIAL_ENV_KEYS.get(provider, ()):
        value = bundle.get(bundle_key)
        if value:
            env[env_key] = str(value)
    if provider == "gcp" and bundle.get("service_account_json"):
        env["GOOGLE_APPLICATION_CREDENTIALS"] = GCP_CREDENTIALS_PATH
    return env


def render_aws_connection_config(bundle: Mapping[str, Any]) -> str:
    """Render a Steampipe AWS connection block for a credential bundle."""
    def quoted(value: Any) -> str:
        return '"' + str(value).replace('"', '\\"') + '"'

    lines = ['connection "aws" {', '  plugin = "aws"']
    if bundle.get("access_key_id"):
        lines.append(f"  access_key = {quoted(bundle['access_key_id'])}")
    if bundle.get("secret_access_key"):
        lines.append(f"  secret_key = {quoted(bundle['secret_access_key'])}")
    if bundle.get("session_token"):
        lines.append(f"  session_token = {quoted(bundle['session_token'])}")
    if bundle.get("region"):
        lines.append(f"  regions = [{quoted(bundle['region'])}]")
    else:
        lines.append('  regions = ["*"]')
    lines.append("}")
    return "\n".join(lines)


def parse_benchmark_list(output: str, provider: Optional[str] = None) -> list[BenchmarkInfo]:
    """Parse ``powerpipe benchmark list`` output (JSON, or plain text as fallback)."""
    entries: list[Any]
    try:
        parsed = extract_json_payload(output)
        if isinstance(parsed, list):
            entries = parsed
        elif isinstance(parsed, dict) and isinstance(parsed.get("benchmarks"), list):
            entries = parsed["benchmarks"]
        elif isinstance(parsed, dict) and isinstance(parsed.get("results"), list):
            entries = parsed["results"]
        else:
            entries = []
    except BenchmarkOutputError:
        entries = [
            {"name": match.group(1)}
            for line in output.splitlines()
            if (match := BENCHMARK_NAME_PATTERN.search(line))
        ]

    benchmarks: list[BenchmarkInfo] = []
    for entry in entries:
        if isinstance(entry, str):
            name, control_count = entry, None
        elif isinstance(entry, dict):
            name = entry.get("name") or entry.get("benchmark")
            control_count = entry.get("control_count")
        else:
            continue
        if not name:
            continue
        benchmarks.append(
            BenchmarkInfo(
                name=name,
                provider=infer_provider(name),
                framework=infer_framework(name),
                control_count=control_count,
            )
        )

    if provider:
        prefix = f"{provider.lower()}_compliance.benchmark."
        benchmarks = [b for b in benchmarks if b.name.startswith(prefix)]
    return benchmarks


class BenchmarkRunner:
    """Service for executing benchmarks in the Powerpipe container.

    Usage:
        runner = BenchmarkRunner()
        raw = await runner.run(
            "aws_compliance.benchmark.soc_2", credential, timeout_seconds=600
        )
    """

    def __init__(self, settings: Optional[Settings] = None):
        """Initialize the BenchmarkRunner."""
        self._settings = settings or get_settings()

    async def run(
        self,
        benchmark_name: str,
        credential: Optional[ActiveCredential] = None,
        timeout_seconds: Optional[float] = None,
    ) -> Any:
        """Run one benchmark and return its parsed JSON document.

        Args:
            benchmark_name: Powerpipe benchmark identifier.
            credential: Credential whose bundle configures the engine.
                AWS runs rewrite the shared Steampipe connection and hold
                the connection lock until the benchmark exits.
            timeout_seconds: Limit for this invocation. Defaults to the
                configured ``benchmark_timeout_seconds``.

        Returns:
            The JSON document emitted by the engine.

        Raises:
            EngineUnavailableError: If the docker binary cannot be executed.
            BenchmarkTimeoutError: If the invocation exceeds its time limit.
            BenchmarkCommandError: If the engine exits abnormally.
            BenchmarkOutputError: If the output holds no parsable JSON.
        """
        timeout = timeout_seconds or self._settings.benchmark_timeout_seconds

        if credential is not None and credential.provider.lower() == "aws":
            async with aws_connection_lock():
                await self._configure_aws_connection(credential)
                return await self._run_benchmark(benchmark_name, credential, timeout)
        return await self._run_benchmark(benchmark_name, credential, timeout)

    async def _run_benchmark(
        self,
        benchmark_name: str,
        credential: Optional[ActiveCredential],
        timeout: float,
    ) -> Any:
        env: dict[str, str] = {}
        if credential is not None:
            env = build_credential_env(credential.provider, credential.bundle)

        args = [self._settings.docker_binary, "exec"]
        for key, value in env.items():
            args.extend(["-e", f"{key}={value}"])
        args.extend([
            "-w", self._settings.powerpipe_workspace,
            self._settings.powerpipe_container,
            "powerpipe", "benchmark", "run", benchmark_name, "--output", "json",
        ])

        logger.info(f"Running benchmark '{benchmark_name}' (timeout {timeout:.0f}s)")

        exit_code, stdout, stderr = await self._execute(args, timeout, benchmark_name)

        if exit_code not in NORMAL_EXIT_CODES:
            raise BenchmarkCommandError(benchmark_name, exit_code, stderr)
        if not stdout.strip():
            raise BenchmarkCommandError(benchmark_name, exit_code, stderr or "no output")

        if stderr and "Warning" not in stderr and "A new version" not in stderr:
            logger.warning(f"Powerpipe stderr for '{benchmark_name}': {stderr.strip()[:500]}")

        try:
            return extract_json_payload(stdout)
        except BenchmarkOutputError as e:
            logger.error(f"Could not parse output of '{benchmark_name}': {e}. Sample: {e.sample}")
            raise

    async def discover_benchmarks(self, provider: Optional[str] = None) -> list[BenchmarkInfo]:
        """List the benchmarks installed in the engine.

        Raises:
            BenchmarkExecutionError: If the engine cannot be queried. Callers
                should not fall back to a static list, because that would hide
                benchmarks that are actually missing.
        """
        args = [
            self._settings.docker_binary, "exec", self._settings.powerpipe_container,
            "powerpipe", "benchmark", "list", "--output", "json",
        ]
        exit_code, stdout, stderr = await self._execute(
            args, DISCOVERY_TIMEOUT_SECONDS, "benchmark list"
        )
        if exit_code != 0:
            raise BenchmarkCommandError("benchmark list", exit_code, stderr)
        return parse_benchmark_list(stdout, provider)

    async def _configure_aws_connection(self, credential: ActiveCredential) -> None:
        """Write the Steampipe AWS connection config and restart the service.

        Failures are logged; the engine then falls back to environment variables.
        """
        config = render_aws_connection_config(credential.bundle)
        encoded = base64.b64encode(config.encode("utf-8")).decode("ascii")
        container = self._settings.powerpipe_container
        docker = self._settings.docker_binary
        try:
            await self._execute(
                [docker, "exec", container, "sh", "-c",
                 f"echo '{encoded}' | base64 -d > {STEAMPIPE_AWS_CONFIG_PATH}"],
                DISCOVERY_TIMEOUT_SECONDS,
                "steampipe config",
            )
            await self._execute(
                [docker, "exec", container, "steampipe", "service", "restart"],
                DISCOVERY_TIMEOUT_SECONDS * 6,
                "steampipe restart",
            )
            logger.info("Steampipe AWS connection configured")
        except BenchmarkExecutionError as e:
            logger.warning(f"Failed to write Steampipe config, using environment variables: {e}")

    async def _execute(
        self,
        args: Sequence[str],
        timeout_seconds: float,
        label: str,
    ) -> tuple[Optional[int], str, str]:
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=self._settings.max_output_bytes,
            )
        except (FileNotFoundError, PermissionError) as e:
            logger.error(f"Cannot execute benchmark engine for {label}: {e}")
            raise EngineUnavailableError(
                f"Cannot execute '{args[0]}' for {label}: {e}. "
                f"Verify the container '{self._settings.powerpipe_container}' is running."
            ) from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout_seconds)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            logger.error(f"{label} timed out after {timeout_seconds:.0f}s; process killed")
            raise BenchmarkTimeoutError(label, timeout_seconds)

        return (
            process.returncode,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
        )


def get_benchmark_runner() -> BenchmarkRunner:
    """Get a BenchmarkRunner instance.

    This is a convenience function for dependency injection in FastAPI.
    """
    return BenchmarkRunner()
