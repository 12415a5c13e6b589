"""Test orchestration: provision, apply, assert and always destroy."""
from __future__ import annotations

import logging
import shutil
import tempfile
from contextlib import ExitStack
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

from .aws import CloudProvider
from .cleanup import CleanupStack, TeardownFailure
from .config import HarnessSettings
from .errors import HarnessError, TeardownError
from .ids import unique_id
from .keys import KeyPair, generate_rsa_key_pair
from .ledger import CREATE, DELETE, FAILED, OK, Ledger, bind_run, create_ledger, record_resource_event
from .log import get_logger
from .remote_state import configure_remote_state, state_key_for
from .resources import (
    RandomResourceCollection,
    create_random_resource_collection,
    destroy_random_resource_collection,
)
from .terraform import TerraformRunner, copy_template

TERRAFORM_STACK = "terraform_stack"


class ScenarioState(str, Enum):
    """Lifecycle of one scenario. DESTROYED is always the terminal state."""

    INIT = "INIT"
    PROVISIONED = "PROVISIONED"
    APPLIED = "APPLIED"
    ASSERTED = "ASSERTED"
    DESTROYED = "DESTROYED"


def scenario_variables(collection: RandomResourceCollection) -> Dict[str, str]:
    """Standard template variables derived from a resource collection."""
    return {
        "aws_region": collection.aws_region,
        "ec2_key_name": collection.key_pair.name,
        "ec2_instance_name": collection.unique_id,
        "ec2_image": collection.ami_id,
    }


class TerraformScenario:
    """One provision/apply/destroy run of a Terraform template.

    Use as a context manager. Teardown of everything provisioned is scheduled
    as soon as it exists and runs on exit no matter which step failed::

        with TerraformScenario("minimal", template, cloud=AwsCloud()) as scenario:
            scenario.provision()
            outputs = scenario.apply()
            assert outputs["instance_name"] == scenario.run_id
            scenario.mark_asserted()
    """

    def __init__(
        self,
        name: str,
        template_path: Path,
        *,
        cloud: CloudProvider,
        terraform: Optional[TerraformRunner] = None,
        settings: Optional[HarnessSettings] = None,
        workdir: Optional[Path] = None,
        retry: bool = False,
        use_remote_state: bool = True,
        ledger: Optional[Ledger] = None,
        logger: Optional[logging.Logger] = None,
        key_generator: Callable[[int], KeyPair] = generate_rsa_key_pair,
    ) -> None:
        self.name = name
        self.template_path = Path(template_path)
        self.working_path = self.template_path
        self.cloud = cloud
        self.settings = settings or HarnessSettings()
        self.logger = logger or get_logger(name, self.settings.log_level)
        self.terraform = terraform or TerraformRunner.from_settings(self.settings, self.logger)
        self.workdir = Path(workdir) if workdir else None
        self.retry = retry
        self.use_remote_state = use_remote_state
        self.ledger = ledger or create_ledger(self.settings.ledger_url)
        self.key_generator = key_generator
        self.run_id = unique_id()
        self.state = ScenarioState.INIT
        self.collection: Optional[RandomResourceCollection] = None
        self.outputs: Dict[str, Any] = {}
        self.teardown_failures: List[TeardownFailure] = []
        self._cleanup = CleanupStack(self.logger)
        self._context = ExitStack()

    def _require(self, *states: ScenarioState) -> None:
        if self.state not in states:
            allowed = ", ".join(state.value for state in states)
            raise HarnessError(f"scenario {self.name} is {self.state.value}; expected {allowed}")

    def __enter__(self) -> "TerraformScenario":
        workdir = self.workdir
        if workdir is None:
            workdir = Path(tempfile.mkdtemp(prefix="terratest-"))
            self._cleanup.push(f"remove working directory {workdir}", shutil.rmtree, workdir, ignore_errors=True)
        try:
            self.working_path = copy_template(self.template_path, workdir)
            self.ledger.start_run(self.run_id, self.name, None)
            self._context.enter_context(bind_run(self.ledger, self.run_id))
        except BaseException:
            self._context.close()
            self._cleanup.unwind()
            raise
        return self

    def provision(self) -> RandomResourceCollection:
        """Create the random resource collection and bind remote state."""
        self._require(ScenarioState.INIT)
        collection = create_random_resource_collection(
            self.cloud,
            key_bits=self.settings.key_bits,
            unique_id=self.run_id,
            key_generator=self.key_generator,
            logger=self.logger,
        )
        self.collection = collection
        self._cleanup.push(
            f"destroy random resource collection {collection.unique_id}",
            self._destroy_collection,
            collection,
        )
        self.state = ScenarioState.PROVISIONED

        if self.use_remote_state and self.settings.remote_state_bucket:
            configure_remote_state(
                self.terraform,
                self.cloud,
                self.working_path,
                self.settings.remote_state_bucket,
                state_key_for(collection.unique_id),
                self.settings.remote_state_region,
                logger=self.logger,
            )
        return collection

    def _destroy_collection(self, collection: RandomResourceCollection) -> None:
        failures = destroy_random_resource_collection(collection)
        self.teardown_failures.extend(failures)

    def variables(self) -> Dict[str, str]:
        """Template variables for the provisioned collection."""
        if self.collection is None:
            raise HarnessError(f"scenario {self.name} has not been provisioned")
        return scenario_variables(self.collection)

    def apply(self, variables: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
        """Apply the template; its destroy is scheduled before apply runs."""
        self._require(ScenarioState.PROVISIONED)
        values = dict(variables) if variables is not None else self.variables()
        region = values.get("aws_region")
        stack_id = f"{self.run_id}:{self.working_path.name}"

        self._cleanup.push(
            f"terraform destroy {self.working_path}", self._destroy_stack, stack_id, region, values
        )
        record_resource_event(TERRAFORM_STACK, stack_id, region, CREATE, OK)
        self.logger.info("Running terraform apply...")
        if self.retry:
            self.outputs = self.terraform.apply_and_get_output_with_retry(self.working_path, values)
        else:
            self.outputs = self.terraform.apply(self.working_path, values)
        self.state = ScenarioState.APPLIED
        return self.outputs

    def _destroy_stack(self, stack_id: str, region: Optional[str], values: Mapping[str, str]) -> None:
        try:
            self.terraform.destroy(self.working_path, values)
        except Exception as exc:
            record_resource_event(TERRAFORM_STACK, stack_id, region, DELETE, FAILED, str(exc))
            raise
        record_resource_event(TERRAFORM_STACK, stack_id, region, DELETE, OK)

    def mark_asserted(self) -> None:
        """Record that caller checks against the outputs passed."""
        self._require(ScenarioState.APPLIED)
        self.state = ScenarioState.ASSERTED

    def destroy(self) -> List[TeardownFailure]:
        """Run every scheduled teardown. Calling it again is a no-op."""
        failures = self._cleanup.unwind()
        self.teardown_failures.extend(failures)
        self.state = ScenarioState.DESTROYED
        return list(self.teardown_failures)

    def __exit__(self, exc_type, exc, tb) -> bool:
        try:
            failures = self.destroy()
            if exc is not None:
                self.logger.error(
                    "Scenario %s failed: %s. Cleanup attempted (%d teardown failure(s)).",
                    self.name,
                    exc,
                    len(failures),
                )
            self._close_run(exc, failures)
        finally:
            self._context.close()
        if exc is None and failures:
            raise TeardownError(failures)
        return False

    def _close_run(self, exc: Optional[BaseException], failures: List[TeardownFailure]) -> None:
        """Audit and close the ledger run; ledger errors are logged, never raised."""
        try:
            for item in self.ledger.outstanding_resources(self.run_id):
                self.logger.warning(
                    "Resource not torn down: %s %s (%s)", item.resource_type, item.resource_id, item.region
                )
            error = str(exc) if exc is not None else None
            if exc is None and failures:
                error = str(TeardownError(failures))
            self.ledger.finish_run(
                self.run_id,
                self.state.value,
                error,
                region=self.collection.aws_region if self.collection else None,
            )
        except Exception as ledger_exc:  # pylint: disable=broad-except
            self.logger.error("Ledger update for run %s failed: %s", self.run_id, ledger_exc, exc_info=True)


def apply_and_destroy(
    description: str,
    template_path: Path,
    variables: Mapping[str, str],
    retry: bool = False,
    terraform: Optional[TerraformRunner] = None,
    logger: Optional[logging.Logger] = None,
) -> Dict[str, Any]:
    """Apply a template, then destroy it whether or not apply succeeded."""
    logger = logger or get_logger(description)
    terraform = terraform or TerraformRunner(logger=logger)
    cleanup = CleanupStack(logger)
    cleanup.push(f"terraform destroy {template_path}", terraform.destroy, Path(template_path), variables)
    logger.info("%s: running terraform apply on %s", description, template_path)
    try:
        if retry:
            outputs = terraform.apply_and_get_output_with_retry(Path(template_path), variables)
        else:
            outputs = terraform.apply(Path(template_path), variables)
    except BaseException as exc:
        failures = cleanup.unwind()
        logger.error(
            "%s failed: %s. Cleanup attempted (%d teardown failure(s)).", description, exc, len(failures)
        )
        raise
    failures = cleanup.unwind()
    if failures:
        raise TeardownError(failures)
    return outputs
