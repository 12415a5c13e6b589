"""AWS helpers backed by boto3."""
from __future__ import annotations

import random
from typing import Dict, List, Optional, Protocol, Sequence

import boto3
from botocore.exceptions import ClientError

from .config import HarnessSettings
from .errors import PreconditionError, ProvisioningError

CANONICAL_OWNER_ID = "099720109477"
UBUNTU_IMAGE_NAME = "ubuntu/images/hvm-ssd*/ubuntu-*-amd64-server-*"
DEFAULT_REGION = "us-east-1"


class CloudProvider(Protocol):
    """Cloud operations the harness depends on."""

    def get_random_region(self) -> str:
        """Pick a region for a test run."""
        raise NotImplementedError

    def create_ec2_key_pair(self, region: str, name: str, public_key: str) -> None:
        """Register a public key as an EC2 key pair."""
        raise NotImplementedError

    def delete_ec2_key_pair(self, region: str, name: str) -> None:
        """Delete an EC2 key pair."""
        raise NotImplementedError

    def assert_s3_bucket_exists(self, region: str, name: str) -> None:
        """Raise PreconditionError when the bucket is missing or unreachable."""
        raise NotImplementedError

    def get_base_image(self, region: str) -> str:
        """Return the AMI id tests launch instances from."""
        raise NotImplementedError


class AwsCloud:
    """CloudProvider implementation for real AWS accounts."""

    def __init__(
        self,
        session: Optional[boto3.Session] = None,
        approved_regions: Sequence[str] = (),
        forbidden_regions: Sequence[str] = (),
        rng: Optional[random.Random] = None,
    ) -> None:
        self._session = session or boto3.Session()
        self._approved_regions = list(approved_regions)
        self._forbidden_regions = set(forbidden_regions)
        self._rng = rng or random.SystemRandom()
        self._clients: Dict[tuple, object] = {}

    @classmethod
    def from_settings(cls, settings: HarnessSettings) -> "AwsCloud":
        return cls(
            approved_regions=settings.approved_regions,
            forbidden_regions=settings.forbidden_regions,
        )

    def client(self, service: str, region: str):
        """Return a cached boto3 client for the service and region."""
        key = (service, region)
        if key not in self._clients:
            self._clients[key] = self._session.client(service, region_name=region)
        return self._clients[key]

    def _enabled_regions(self) -> List[str]:
        """List regions enabled for the account."""
        ec2 = self.client("ec2", DEFAULT_REGION)
        response = ec2.describe_regions(
            Filters=[{"Name": "opt-in-status", "Values": ["opt-in-not-required", "opted-in"]}]
        )
        return sorted(region["RegionName"] for region in response.get("Regions", []))

    def get_random_region(self) -> str:
        """Pick a random approved region that is not forbidden."""
        candidates = self._approved_regions or self._enabled_regions()
        allowed = [region for region in candidates if region not in self._forbidden_regions]
        if not allowed:
            raise ProvisioningError("select region", "no regions left after applying the forbidden list")
        return self._rng.choice(allowed)

    def create_ec2_key_pair(self, region: str, name: str, public_key: str) -> None:
        """Import the public key as an EC2 key pair named `name`."""
        ec2 = self.client("ec2", region)
        ec2.import_key_pair(KeyName=name, PublicKeyMaterial=public_key.encode("utf-8"))

    def delete_ec2_key_pair(self, region: str, name: str) -> None:
        """Delete an EC2 key pair. Deleting a missing key pair succeeds."""
        ec2 = self.client("ec2", region)
        ec2.delete_key_pair(KeyName=name)

    def assert_s3_bucket_exists(self, region: str, name: str) -> None:
        """Check the bucket with HeadBucket; never creates it."""
        s3 = self.client("s3", region)
        try:
            s3.head_bucket(Bucket=name)
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code", "")
            raise PreconditionError(
                f"S3 bucket {name} in {region} does not exist or is not accessible ({code})"
            ) from exc

    def get_ubuntu_ami(self, region: str) -> str:
        """Return the newest Canonical Ubuntu amd64 server AMI in the region."""
        ec2 = self.client("ec2", region)
        response = ec2.describe_images(
            Owners=[CANONICAL_OWNER_ID],
            Filters=[
                {"Name": "name", "Values": [UBUNTU_IMAGE_NAME]},
                {"Name": "state", "Values": ["available"]},
                {"Name": "architecture", "Values": ["x86_64"]},
            ],
        )
        images = response.get("Images", [])
        if not images:
            raise ProvisioningError("resolve image", f"no Ubuntu AMI found in {region}")
        newest = max(images, key=lambda image: image.get("CreationDate", ""))
        return newest["ImageId"]

    def get_base_image(self, region: str) -> str:
        return self.get_ubuntu_ami(region)
