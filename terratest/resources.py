"""Random per-test resources: region, id, EC2 key pair and base image."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from .aws import CloudProvider
from .cleanup import CleanupStack, TeardownFailure
from .errors import HarnessError, ProvisioningError
from .ids import unique_id as generate_unique_id
from .keys import KeyPair, generate_rsa_key_pair
from .ledger import CREATE, DELETE, FAILED, OK, record_resource_event, traced

EC2_KEY_PAIR = "ec2_key_pair"


@dataclass(frozen=True)
class Ec2KeyPair:
    """A key pair registered in EC2 under `name`."""
    name: str
    region: str
    key_pair: KeyPair

    @property
    def public_key(self) -> str:
        return self.key_pair.public_key

    @property
    def private_key(self) -> str:
        return self.key_pair.private_key


@dataclass(frozen=True)
class RandomResourceCollection:
    """Everything one test run provisions before applying a template."""
    unique_id: str
    aws_region: str
    key_pair: Ec2KeyPair
    ami_id: str
    cleanup: CleanupStack = field(repr=False, compare=False)


def create_ec2_key_pair(
    cloud: CloudProvider, region: str, name: str, key_pair: KeyPair, cleanup: CleanupStack
) -> Ec2KeyPair:
    """Register the key pair and schedule its deletion."""
    try:
        cloud.create_ec2_key_pair(region, name, key_pair.public_key)
    except Exception:
        record_resource_event(EC2_KEY_PAIR, name, region, CREATE, FAILED)
        raise
    record_resource_event(EC2_KEY_PAIR, name, region, CREATE, OK)
    cleanup.push(f"delete EC2 key pair {name} in {region}", delete_ec2_key_pair, cloud, region, name)
    return Ec2KeyPair(name=name, region=region, key_pair=key_pair)


def delete_ec2_key_pair(cloud: CloudProvider, region: str, name: str) -> None:
    try:
        cloud.delete_ec2_key_pair(region, name)
    except Exception as exc:
        record_resource_event(EC2_KEY_PAIR, name, region, DELETE, FAILED, str(exc))
        raise
    record_resource_event(EC2_KEY_PAIR, name, region, DELETE, OK)


@traced("provision random resources")
def create_random_resource_collection(
    cloud: CloudProvider,
    *,
    key_bits: int = 2048,
    unique_id: Optional[str] = None,
    key_generator: Callable[[int], KeyPair] = generate_rsa_key_pair,
    logger: Optional[logging.Logger] = None,
) -> RandomResourceCollection:
    """Provision a fresh collection or raise ProvisioningError.

    Remote state created before a failing step is torn down before the error
    is raised.
    """
    logger = logger or logging.getLogger(__name__)
    cleanup = CleanupStack(logger)
    step = "select region"
    try:
        region = cloud.get_random_region()
        run_id = unique_id or generate_unique_id()
        logger.info("Random values selected. Region = %s, Id = %s", region, run_id)

        step = "generate key pair"
        key_pair = key_generator(key_bits)

        step = "create EC2 key pair"
        logger.info("Creating EC2 key pair %s in %s", run_id, region)
        ec2_key_pair = create_ec2_key_pair(cloud, region, run_id, key_pair, cleanup)

        step = "resolve base image"
        ami_id = cloud.get_base_image(region)
    except BaseException as exc:
        failures = cleanup.unwind()
        if failures:
            logger.error("%d cleanup step(s) failed after %s failed", len(failures), step)
        if isinstance(exc, ProvisioningError) or not isinstance(exc, Exception):
            raise
        message = str(exc) if isinstance(exc, HarnessError) else f"{type(exc).__name__}: {exc}"
        raise ProvisioningError(step, message) from exc

    return RandomResourceCollection(
        unique_id=run_id,
        aws_region=region,
        key_pair=ec2_key_pair,
        ami_id=ami_id,
        cleanup=cleanup,
    )


def destroy_random_resource_collection(
    collection: Optional[RandomResourceCollection],
) -> List[TeardownFailure]:
    """Tear down whatever the collection created. Safe to call repeatedly."""
    if collection is None:
        return []
    return collection.cleanup.unwind()
