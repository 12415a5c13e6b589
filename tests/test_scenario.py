from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

from sqlalchemy.exc import OperationalError

from conftest import FIXTURE_DIR, FakeCloud, ScriptedTerraform, fake_key_generator
from terratest.config import HarnessSettings
from terratest.errors import HarnessError, PreconditionError, TeardownError, ToolError
from terratest.remote_state import BACKEND_FILE
from terratest.scenario import ScenarioState, TerraformScenario, apply_and_destroy
from terratest.terraform import copy_template

TEMPLATE = FIXTURE_DIR / "minimal-example"


def _scenario(
    cloud: FakeCloud,
    terraform: ScriptedTerraform,
    settings: HarnessSettings,
    workdir: Path,
    **kwargs,
) -> TerraformScenario:
    return TerraformScenario(
        "TestScenario",
        TEMPLATE,
        cloud=cloud,
        terraform=terraform,
        settings=settings,
        workdir=workdir,
        key_generator=fake_key_generator,
        **kwargs,
    )


def test_full_lifecycle_reaches_destroyed(
    fake_cloud: FakeCloud, scripted_terraform: ScriptedTerraform, settings: HarnessSettings, tmp_path: Path, ledger
) -> None:
    scenario = _scenario(fake_cloud, scripted_terraform, settings, tmp_path, ledger=ledger)

    with scenario:
        assert scenario.state is ScenarioState.INIT
        collection = scenario.provision()
        assert scenario.state is ScenarioState.PROVISIONED
        outputs = scenario.apply()
        assert scenario.state is ScenarioState.APPLIED
        assert outputs == {"instance_name": "scripted"}
        scenario.mark_asserted()
        assert scenario.state is ScenarioState.ASSERTED

    assert scenario.state is ScenarioState.DESTROYED
    assert scenario.working_path == tmp_path / "minimal-example"
    assert scripted_terraform.count("destroy") == 1
    assert fake_cloud.count("create_ec2_key_pair") == fake_cloud.count("delete_ec2_key_pair") == 1
    assert scenario.variables() == {
        "aws_region": "us-west-2",
        "ec2_key_name": collection.unique_id,
        "ec2_instance_name": collection.unique_id,
        "ec2_image": "ami-1234",
    }
    assert ledger.run_state(scenario.run_id) == "DESTROYED"
    assert ledger.outstanding_resources(scenario.run_id) == []


def test_apply_failure_still_destroys(
    fake_cloud: FakeCloud, settings: HarnessSettings, tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    terraform = ScriptedTerraform(failures={"apply": [(1, "Error: Unsupported argument")]})
    scenario = _scenario(fake_cloud, terraform, settings, tmp_path)

    with pytest.raises(ToolError):
        with scenario:
            scenario.provision()
            scenario.apply()

    assert scenario.state is ScenarioState.DESTROYED
    assert terraform.count("destroy") == 1
    assert fake_cloud.count("delete_ec2_key_pair") == 1
    assert "Cleanup attempted" in caplog.text


def test_failed_assertion_still_destroys(
    fake_cloud: FakeCloud, scripted_terraform: ScriptedTerraform, settings: HarnessSettings, tmp_path: Path
) -> None:
    scenario = _scenario(fake_cloud, scripted_terraform, settings, tmp_path)

    with pytest.raises(AssertionError):
        with scenario:
            scenario.provision()
            outputs = scenario.apply()
            assert outputs["instance_name"] == "something-else"

    assert scripted_terraform.count("destroy") == 1
    assert fake_cloud.key_pairs == {}


def test_teardown_failure_does_not_mask_apply_failure(
    fake_cloud: FakeCloud, settings: HarnessSettings, tmp_path: Path, ledger
) -> None:
    terraform = ScriptedTerraform(
        failures={
            "apply": [(1, "Error: creating EC2 Instance: InvalidAMIID.Malformed")],
            "destroy": [(1, "Error: DependencyViolation")],
        }
    )
    scenario = _scenario(fake_cloud, terraform, settings, tmp_path, ledger=ledger)

    with pytest.raises(ToolError) as excinfo:
        with scenario:
            scenario.provision()
            scenario.apply()

    assert excinfo.value.command == "terraform apply"
    assert len(scenario.teardown_failures) == 1
    assert fake_cloud.count("delete_ec2_key_pair") == 1
    leaked = ledger.outstanding_resources(scenario.run_id)
    assert [item.resource_type for item in leaked] == ["terraform_stack"]


def test_teardown_failure_after_success_raises(
    fake_cloud: FakeCloud, settings: HarnessSettings, tmp_path: Path
) -> None:
    terraform = ScriptedTerraform(failures={"destroy": [(1, "Error: DependencyViolation")]})
    scenario = _scenario(fake_cloud, terraform, settings, tmp_path)

    with pytest.raises(TeardownError) as excinfo:
        with scenario:
            scenario.provision()
            scenario.apply()

    assert "DependencyViolation" in str(excinfo.value)
    assert fake_cloud.count("delete_ec2_key_pair") == 1
    assert scenario.state is ScenarioState.DESTROYED


def test_terraform_destroy_runs_before_key_pair_delete(
    fake_cloud: FakeCloud,
    scripted_terraform: ScriptedTerraform,
    settings: HarnessSettings,
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    order: list[str] = []
    destroy = scripted_terraform.destroy
    delete_key_pair = fake_cloud.delete_ec2_key_pair

    def recording_destroy(path, variables):
        order.append("terraform destroy")
        return destroy(path, variables)

    def recording_delete(region, name):
        order.append("delete key pair")
        return delete_key_pair(region, name)

    monkeypatch.setattr(scripted_terraform, "destroy", recording_destroy)
    monkeypatch.setattr(fake_cloud, "delete_ec2_key_pair", recording_delete)

    with _scenario(fake_cloud, scripted_terraform, settings, tmp_path) as scenario:
        scenario.provision()
        scenario.apply()

    assert order == ["terraform destroy", "delete key pair"]


def test_destroy_is_idempotent(
    fake_cloud: FakeCloud, scripted_terraform: ScriptedTerraform, settings: HarnessSettings, tmp_path: Path
) -> None:
    with _scenario(fake_cloud, scripted_terraform, settings, tmp_path) as scenario:
        scenario.provision()
        scenario.apply()
        assert scenario.destroy() == []

    assert scenario.destroy() == []
    assert scripted_terraform.count("destroy") == 1
    assert fake_cloud.count("delete_ec2_key_pair") == 1


def test_remote_state_is_bound_to_run_id(
    fake_cloud: FakeCloud, scripted_terraform: ScriptedTerraform, tmp_path: Path
) -> None:
    settings = HarnessSettings(remote_state_bucket="terratest-state", remote_state_region="us-east-1")

    with _scenario(fake_cloud, scripted_terraform, settings, tmp_path) as scenario:
        scenario.provision()
        backend = (scenario.working_path / BACKEND_FILE).read_text()
        scenario.apply()

    assert f'key     = "{scenario.run_id}/terraform.tfstate"' in backend
    assert ["init", "-input=false", "-reconfigure"] in scripted_terraform.commands
    assert not (TEMPLATE / BACKEND_FILE).exists()


def test_missing_state_bucket_is_fatal_and_cleans_up(
    scripted_terraform: ScriptedTerraform, tmp_path: Path
) -> None:
    cloud = FakeCloud()
    settings = HarnessSettings(remote_state_bucket="missing-bucket")

    with pytest.raises(PreconditionError):
        with _scenario(cloud, scripted_terraform, settings, tmp_path) as scenario:
            scenario.provision()
            scenario.apply()

    assert scripted_terraform.count("apply") == 0
    assert cloud.count("delete_ec2_key_pair") == 1


def test_apply_before_provision_is_rejected(
    fake_cloud: FakeCloud, scripted_terraform: ScriptedTerraform, settings: HarnessSettings, tmp_path: Path
) -> None:
    with pytest.raises(HarnessError):
        with _scenario(fake_cloud, scripted_terraform, settings, tmp_path) as scenario:
            scenario.apply()

    assert scenario.state is ScenarioState.DESTROYED
    assert scripted_terraform.commands == []


def test_scenario_retries_transient_apply(
    fake_cloud: FakeCloud, settings: HarnessSettings, tmp_path: Path
) -> None:
    terraform = ScriptedTerraform(
        outputs={"instance_name": "ok"},
        failures={"apply": [(1, "Error: InvalidKeyPair.NotFound: The key pair does not exist")]},
    )

    with _scenario(fake_cloud, terraform, settings, tmp_path, retry=True) as scenario:
        scenario.provision()
        outputs = scenario.apply()

    assert outputs == {"instance_name": "ok"}
    assert terraform.count("apply") == 2
    assert terraform.count("destroy") == 1


def test_concurrent_scenarios_do_not_collide(settings: HarnessSettings, tmp_path: Path) -> None:
    cloud = FakeCloud()

    def run(index: int) -> str:
        terraform = ScriptedTerraform(outputs={"index": str(index)})
        workdir = tmp_path / str(index)
        workdir.mkdir()
        with _scenario(cloud, terraform, settings, workdir) as scenario:
            scenario.provision()
            assert scenario.apply() == {"index": str(index)}
        return scenario.run_id

    with ThreadPoolExecutor(max_workers=4) as pool:
        run_ids = list(pool.map(run, range(8)))

    assert len(set(run_ids)) == 8
    assert cloud.count("create_ec2_key_pair") == cloud.count("delete_ec2_key_pair") == 8
    assert cloud.key_pairs == {}


def test_apply_and_destroy_returns_outputs(scripted_terraform: ScriptedTerraform, tmp_path: Path) -> None:
    outputs = apply_and_destroy(
        "Integration Test - apply and destroy", tmp_path, {"aws_region": "us-west-2"}, terraform=scripted_terraform
    )

    assert outputs == {"instance_name": "scripted"}
    assert [args[0] for args in scripted_terraform.commands] == ["init", "apply", "output", "init", "destroy"]


def test_apply_and_destroy_destroys_after_failure(tmp_path: Path) -> None:
    terraform = ScriptedTerraform(failures={"apply": [(1, "Error: Invalid value for variable")]})

    with pytest.raises(ToolError):
        apply_and_destroy("failing apply", tmp_path, {}, terraform=terraform)

    assert terraform.count("destroy") == 1


def test_apply_and_destroy_reports_destroy_failure(tmp_path: Path) -> None:
    terraform = ScriptedTerraform(failures={"destroy": [(1, "Error: DependencyViolation")]})

    with pytest.raises(TeardownError):
        apply_and_destroy("failing destroy", tmp_path, {}, terraform=terraform)


def test_interrupted_apply_and_destroy_still_destroys(
    scripted_terraform: ScriptedTerraform, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    def interrupted_apply(path, variables):
        raise KeyboardInterrupt()

    monkeypatch.setattr(scripted_terraform, "apply", interrupted_apply)

    with pytest.raises(KeyboardInterrupt):
        apply_and_destroy("interrupted apply", tmp_path, {}, terraform=scripted_terraform)

    assert scripted_terraform.count("destroy") == 1


def test_interrupted_scenario_still_destroys(
    fake_cloud: FakeCloud,
    scripted_terraform: ScriptedTerraform,
    settings: HarnessSettings,
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def interrupted_apply(path, variables):
        raise KeyboardInterrupt()

    monkeypatch.setattr(scripted_terraform, "apply", interrupted_apply)

    with pytest.raises(KeyboardInterrupt):
        with _scenario(fake_cloud, scripted_terraform, settings, tmp_path) as scenario:
            scenario.provision()
            scenario.apply()

    assert scenario.state is ScenarioState.DESTROYED
    assert scripted_terraform.count("destroy") == 1
    assert fake_cloud.key_pairs == {}


def test_default_workdir_leaves_template_untouched(
    fake_cloud: FakeCloud, scripted_terraform: ScriptedTerraform, tmp_path: Path
) -> None:
    template = copy_template(TEMPLATE, tmp_path)
    settings = HarnessSettings(remote_state_bucket="terratest-state", retry_delay_seconds=0)

    with TerraformScenario(
        "TestDefaultWorkdir",
        template,
        cloud=fake_cloud,
        terraform=scripted_terraform,
        settings=settings,
        key_generator=fake_key_generator,
    ) as scenario:
        scenario.provision()
        working_path = scenario.working_path
        assert working_path != template
        assert (working_path / BACKEND_FILE).exists()
        scenario.apply()

    assert not (template / BACKEND_FILE).exists()
    assert not working_path.exists()
    assert set(scripted_terraform.cwds) == {working_path}


def test_minimal_example_vars_reach_terraform(tmp_path: Path) -> None:
    project_dir = copy_template(TEMPLATE, tmp_path)
    variables = {
        "aws_region": "us-west-2",
        "ec2_key_name": "k1",
        "ec2_instance_name": "k1",
        "ec2_image": "ami-1234",
    }
    terraform = ScriptedTerraform(
        outputs={"aws_region": "us-west-2", "ec2_key_name": "k1", "instance_name": "k1", "ec2_image": "ami-1234"}
    )

    outputs = apply_and_destroy("Integration Test - minimal example", project_dir, variables, terraform=terraform)

    expected_vars = [
        "-var", "aws_region=us-west-2",
        "-var", "ec2_image=ami-1234",
        "-var", "ec2_instance_name=k1",
        "-var", "ec2_key_name=k1",
    ]
    apply_args = [args for args in terraform.commands if args[0] == "apply"]
    destroy_args = [args for args in terraform.commands if args[0] == "destroy"]
    assert apply_args == [["apply", "-input=false", "-auto-approve", *expected_vars]]
    assert len(destroy_args) == 1
    assert destroy_args[0][-8:] == expected_vars
    assert outputs["instance_name"] == "k1"
    assert set(terraform.cwds) == {project_dir}


def test_ledger_failure_does_not_mask_primary_error(
    fake_cloud: FakeCloud,
    settings: HarnessSettings,
    tmp_path: Path,
    ledger,
    monkeypatch: pytest.MonkeyPatch,
    caplog: pytest.LogCaptureFixture,
) -> None:
    def locked(run_id):
        raise OperationalError("SELECT", {}, Exception("database is locked"))

    monkeypatch.setattr(ledger, "outstanding_resources", locked)
    terraform = ScriptedTerraform(failures={"apply": [(1, "Error: Unsupported argument")]})

    with pytest.raises(ToolError):
        with _scenario(fake_cloud, terraform, settings, tmp_path, ledger=ledger) as scenario:
            scenario.provision()
            scenario.apply()

    assert terraform.count("destroy") == 1
    assert fake_cloud.key_pairs == {}
    assert "database is locked" in caplog.text
