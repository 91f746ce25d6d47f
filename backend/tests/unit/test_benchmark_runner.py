"""Unit tests for the Benchmark Runner."""

import asyncio
import base64
import json
import uuid
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from app.config import Settings
from app.services.benchmark_runner import (
    BenchmarkCommandError,
    BenchmarkRunner,
    BenchmarkTimeoutError,
    EngineUnavailableError,
    aws_connection_lock,
    build_credential_env,
    get_benchmark_name,
    infer_framework,
    infer_provider,
    parse_benchmark_list,
    render_aws_connection_config,
)
from app.services.credential_store import ActiveCredential
from app.services.output_normalizer import BenchmarkOutputError

SUBPROCESS_EXEC = "app.services.benchmark_runner.asyncio.create_subprocess_exec"


@pytest.fixture
def settings():
    return Settings(
        docker_binary="docker",
        powerpipe_container="powerpipe",
        powerpipe_workspace="/workspace",
        benchmark_timeout_seconds=900,
    )


@pytest.fixture
def runner(settings):
    return BenchmarkRunner(settings)


def make_process(returncode=0, stdout=b"", stderr=b""):
    process = MagicMock()
    process.returncode = returncode
    process.communicate = AsyncMock(return_value=(stdout, stderr))
    process.kill = MagicMock()
    process.wait = AsyncMock(return_value=returncode)
    return process


def azure_credential():
    return ActiveCredential(
        id=uuid.uuid4(),
        provider="azure",
        bundle={
            "client_id": "app-id",
            "client_secret": "s3cret",
            "tenant_id": "tenant",
            "subscription_id": "sub",
        },
    )


class TestBenchmarkMapping:
    """Tests for framework/provider to benchmark lookup."""

    def test_known_pair(self):
        assert get_benchmark_name("SOC2", "aws") == "aws_compliance.benchmark.soc_2"

    def test_provider_is_case_insensitive(self):
        assert get_benchmark_name("HIPAA", "AWS") == "aws_compliance.benchmark.hipaa_security_rule_2003"

    def test_unmapped_framework(self):
        assert get_benchmark_name("FedRAMP", "gcp") is None

    def test_unknown_provider(self):
        assert get_benchmark_name("SOC2", "oracle") is None

    def test_custom_mapping(self):
        assert get_benchmark_name("X", "aws", {"aws": {"X": "custom.benchmark.x"}}) == "custom.benchmark.x"

    def test_infer_framework_and_provider(self):
        assert infer_framework("azure_compliance.benchmark.pci_dss_v321") == "PCI-DSS"
        assert infer_provider("azure_compliance.benchmark.pci_dss_v321") == "azure"
        assert infer_provider("something_else.benchmark.x") == "unknown"


class TestCredentialEnv:
    """Tests for translating credential bundles to engine environment."""

    def test_aws_keys(self):
        env = build_credential_env("aws", {
            "access_key_id": "AKIA",
            "secret_access_key": "secret",
            "region": "eu-west-1",
            "unrelated": "ignored",
        })

        assert env == {
            "AWS_ACCESS_KEY_ID": "AKIA",
            "AWS_SECRET_ACCESS_KEY": "secret",
            "AWS_DEFAULT_REGION": "eu-west-1",
        }

    def test_gcp_service_account(self):
        env = build_credential_env("gcp", {"project_id": "proj", "service_account_json": "{}"})

        assert env["GCP_PROJECT"] == "proj"
        assert "GOOGLE_APPLICATION_CREDENTIALS" in env

    def test_unknown_provider_yields_nothing(self):
        assert build_credential_env("oracle", {"access_key_id": "x"}) == {}

    def test_aws_connection_config(self):
        config = render_aws_connection_config({"access_key_id": "AKIA", "secret_access_key": 'a"b'})

        assert 'access_key = "AKIA"' in config
        assert 'secret_key = "a\\"b"' in config
        assert 'regions = ["*"]' in config


class TestParseBenchmarkList:
    """Tests for parsing the engine's benchmark list."""

    def test_json_list_filtered_by_provider(self):
        output = json.dumps([
            {"name": "aws_compliance.benchmark.soc_2", "control_count": 180},
            {"name": "azure_compliance.benchmark.soc_2"},
        ])

        benchmarks = parse_benchmark_list(output, "aws")

        assert [b.name for b in benchmarks] == ["aws_compliance.benchmark.soc_2"]
        assert benchmarks[0].framework == "SOC2"
        assert benchmarks[0].control_count == 180

    def test_wrapped_json(self):
        output = json.dumps({"benchmarks": ["gcp_compliance.benchmark.cis_v200"]})

        benchmarks = parse_benchmark_list(output)

        assert benchmarks[0].provider == "gcp"
        assert benchmarks[0].framework == "CIS"

    def test_plain_text_fallback(self):
        output = (
            "NAME                                         TITLE\n"
            "aws_compliance.benchmark.hipaa_security_rule_2003   HIPAA\n"
            "aws_compliance.benchmark.gdpr                        GDPR\n"
        )

        benchmarks = parse_benchmark_list(output)

        assert [b.framework for b in benchmarks] == ["HIPAA", "GDPR"]


class TestBenchmarkRunnerRun:
    """Tests for running a single benchmark."""

    @pytest.mark.asyncio
    async def test_run_returns_parsed_document(self, runner):
        process = make_process(0, b'Update available\n{"controls": []}\n')

        with patch(SUBPROCESS_EXEC, AsyncMock(return_value=process)) as mock_exec:
            document = await runner.run("azure_compliance.benchmark.soc_2", azure_credential())

        assert document == {"controls": []}
        args = mock_exec.call_args.args
        assert args[:2] == ("docker", "exec")
        assert "AZURE_CLIENT_SECRET=s3cret" in args
        assert args[-6:] == (
            "powerpipe", "benchmark", "run", "azure_compliance.benchmark.soc_2", "--output", "json",
        )

    @pytest.mark.asyncio
    @pytest.mark.parametrize("exit_code", [1, 2])
    async def test_alarm_exit_codes_are_normal(self, runner, exit_code):
        process = make_process(exit_code, b'{"controls": []}')

        with patch(SUBPROCESS_EXEC, AsyncMock(return_value=process)):
            document = await runner.run("azure_compliance.benchmark.soc_2")

        assert document == {"controls": []}

    @pytest.mark.asyncio
    async def test_abnormal_exit_code_raises(self, runner):
        process = make_process(3, b"", b"Error: benchmark not found")

        with patch(SUBPROCESS_EXEC, AsyncMock(return_value=process)):
            with pytest.raises(BenchmarkCommandError) as exc_info:
                await runner.run("aws_compliance.benchmark.nope")

        assert exc_info.value.exit_code == 3
        assert "benchmark not found" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_empty_output_raises(self, runner):
        process = make_process(0, b"   ")

        with patch(SUBPROCESS_EXEC, AsyncMock(return_value=process)):
            with pytest.raises(BenchmarkCommandError):
                await runner.run("aws_compliance.benchmark.soc_2")

    @pytest.mark.asyncio
    async def test_unparsable_output_raises(self, runner):
        process = make_process(0, b"powerpipe crashed")

        with patch(SUBPROCESS_EXEC, AsyncMock(return_value=process)):
            with pytest.raises(BenchmarkOutputError):
                await runner.run("aws_compliance.benchmark.soc_2")

    @pytest.mark.asyncio
    async def test_timeout_kills_process(self, runner):
        async def never_finishes():
            await asyncio.sleep(10)

        process = make_process()
        process.communicate = AsyncMock(side_effect=never_finishes)

        with patch(SUBPROCESS_EXEC, AsyncMock(return_value=process)):
            with pytest.raises(BenchmarkTimeoutError) as exc_info:
                await runner.run("aws_compliance.benchmark.soc_2", timeout_seconds=0.05)

        process.kill.assert_called_once()
        process.wait.assert_awaited_once()
        assert exc_info.value.timeout_seconds == 0.05

    @pytest.mark.asyncio
    async def test_missing_docker_binary_raises_engine_unavailable(self, runner):
        with patch(SUBPROCESS_EXEC, AsyncMock(side_effect=FileNotFoundError("docker"))):
            with pytest.raises(EngineUnavailableError):
                await runner.run("aws_compliance.benchmark.soc_2")

    @pytest.mark.asyncio
    async def test_aws_credential_configures_connection_first(self, runner):
        credential = ActiveCredential(
            id=uuid.uuid4(),
            provider="aws",
            bundle={"access_key_id": "AKIA", "secret_access_key": "secret"},
        )
        processes = [make_process(0), make_process(0), make_process(0, b'{"controls": []}')]

        with patch(SUBPROCESS_EXEC, AsyncMock(side_effect=processes)) as mock_exec:
            await runner.run("aws_compliance.benchmark.soc_2", credential)

        assert mock_exec.await_count == 3
        assert "base64 -d" in mock_exec.call_args_list[0].args[-1]
        assert mock_exec.call_args_list[1].args[-3:] == ("steampipe", "service", "restart")
        assert "AWS_ACCESS_KEY_ID=AKIA" in mock_exec.call_args_list[2].args

    @pytest.mark.asyncio
    async def test_aws_connection_failure_is_not_fatal(self, runner):
        credential = ActiveCredential(id=uuid.uuid4(), provider="aws", bundle={"access_key_id": "AKIA"})
        side_effect = [PermissionError("denied"), make_process(0, b'{"controls": []}')]

        with patch(SUBPROCESS_EXEC, AsyncMock(side_effect=side_effect)):
            document = await runner.run("aws_compliance.benchmark.soc_2", credential)

        assert document == {"controls": []}

    @pytest.mark.asyncio
    async def test_concurrent_aws_runs_keep_their_own_connection(self, runner):
        """Concurrent AWS runs never execute against another credential's connection file."""
        state = {"config": None}
        events = []

        async def fake_execute(args, timeout_seconds, label):
            await asyncio.sleep(0)
            if label == "steampipe config":
                encoded = args[-1].split("'")[1]
                state["config"] = base64.b64decode(encoded).decode()
                events.append(("write_config", state["config"]))
            elif label == "steampipe restart":
                await asyncio.sleep(0)
            else:
                key = next(a for a in args if a.startswith("AWS_ACCESS_KEY_ID="))
                events.append(("run", key, state["config"]))
                await asyncio.sleep(0)
                return 0, '{"controls": []}', ""
            return 0, "", ""

        credentials = [
            ActiveCredential(id=uuid.uuid4(), provider="aws", bundle={"access_key_id": key})
            for key in ("AKIA_A", "AKIA_B", "AKIA_C")
        ]

        with patch.object(runner, "_execute", side_effect=fake_execute):
            await asyncio.gather(*(
                runner.run("aws_compliance.benchmark.hipaa_security_rule_2003", credential)
                for credential in credentials
            ))

        runs = [event for event in events if event[0] == "run"]
        assert len(runs) == 3
        for _, key, config in runs:
            assert f'access_key = "{key.split("=", 1)[1]}"' in config

    @pytest.mark.asyncio
    async def test_non_aws_runs_do_not_wait_for_the_connection_lock(self, runner):
        """Runs without a connection file proceed while an AWS run holds the lock."""
        with patch(SUBPROCESS_EXEC, AsyncMock(return_value=make_process(0, b'{"controls": []}'))):
            async with aws_connection_lock():
                document = await asyncio.wait_for(
                    runner.run("azure_compliance.benchmark.hipaa", azure_credential()),
                    timeout=1,
                )

        assert document == {"controls": []}


class TestDiscoverBenchmarks:
    """Tests for benchmark discovery."""

    @pytest.mark.asyncio
    async def test_discovery(self, runner):
        output = json.dumps(["aws_compliance.benchmark.soc_2", "gcp_compliance.benchmark.soc_2"]).encode()

        with patch(SUBPROCESS_EXEC, AsyncMock(return_value=make_process(0, output))):
            benchmarks = await runner.discover_benchmarks("gcp")

        assert [b.name for b in benchmarks] == ["gcp_compliance.benchmark.soc_2"]

    @pytest.mark.asyncio
    async def test_discovery_failure_raises(self, runner):
        with patch(SUBPROCESS_EXEC, AsyncMock(return_value=make_process(1, b"", b"no container"))):
            with pytest.raises(BenchmarkCommandError):
                await runner.discover_benchmarks()
