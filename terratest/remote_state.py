"""Bind a Terraform template to S3 remote state."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from .aws import CloudProvider
from .terraform import TerraformRunner

BACKEND_FILE = "terratest_backend.tf"

BACKEND_TEMPLATE = """\
terraform {{
  backend "s3" {{
    bucket  = "{bucket}"
    key     = "{key}"
    region  = "{region}"
    encrypt = true
  }}
}}
"""


def state_key_for(unique_id: str) -> str:
    """Remote state key for one test run."""
    return f"{unique_id}/terraform.tfstate"


def write_backend_config(template_path: Path, bucket: str, state_key: str, region: str) -> Path:
    """Write the S3 backend block into the template directory."""
    backend_file = Path(template_path) / BACKEND_FILE
    backend_file.write_text(
        BACKEND_TEMPLATE.format(bucket=bucket, key=state_key, region=region), encoding="utf-8"
    )
    return backend_file


def configure_remote_state(
    terraform: TerraformRunner,
    cloud: CloudProvider,
    template_path: Path,
    bucket: str,
    state_key: str,
    bucket_region: str,
    logger: Optional[logging.Logger] = None,
) -> Path:
    """Point the template at an existing S3 bucket for its state.

    Raises PreconditionError when the bucket does not exist; the bucket is
    never created here.
    """
    logger = logger or logging.getLogger(__name__)
    cloud.assert_s3_bucket_exists(bucket_region, bucket)
    backend_file = write_backend_config(template_path, bucket, state_key, bucket_region)
    logger.info("Configured remote state s3://%s/%s (%s)", bucket, state_key, bucket_region)
    terraform.init(Path(template_path), reconfigure=True)
    return backend_file
