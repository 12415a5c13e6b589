"""Helpers for integration-testing Terraform templates against AWS."""
from __future__ import annotations

from .aws import AwsCloud, CloudProvider
from .config import HarnessSettings
from .errors import (
    HarnessError,
    PreconditionError,
    ProvisioningError,
    TeardownError,
    ToolError,
    TransientToolError,
)
from .ids import unique_id
from .keys import KeyPair, generate_rsa_key_pair
from .log import get_logger
from .remote_state import configure_remote_state
from .resources import (
    RandomResourceCollection,
    create_random_resource_collection,
    destroy_random_resource_collection,
)
from .scenario import ScenarioState, TerraformScenario, apply_and_destroy
from .terraform import TerraformRunner

__all__ = [
    "AwsCloud",
    "CloudProvider",
    "HarnessError",
    "HarnessSettings",
    "KeyPair",
    "PreconditionError",
    "ProvisioningError",
    "RandomResourceCollection",
    "ScenarioState",
    "TeardownError",
    "TerraformRunner",
    "TerraformScenario",
    "ToolError",
    "TransientToolError",
    "apply_and_destroy",
    "configure_remote_state",
    "create_random_resource_collection",
    "destroy_random_resource_collection",
    "generate_rsa_key_pair",
    "get_logger",
    "unique_id",
]
