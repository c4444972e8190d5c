# models.py
"""
Data models shared by the stack, the audit rules and the CLI.

- Keep simple, serializable dataclasses for findings and deployment settings.
- GitScanningConfig is the single input to GitScanningStack.
"""

from dataclasses import dataclass, field
from typing import Dict, Optional

DEFAULT_SCHEDULE = {"minute": "0", "hour": "0", "week_day": "MON"}


@dataclass
class Finding:
    """
    Represents a single audit finding.

    Fields:
    - resource: canonical identifier (e.g., "s3://my-bucket" or "cfn:GitScanningJobRole")
    - issue: short human-readable description (e.g., "Versioning Not Enabled")
    - severity: numeric severity (0-10)
    - details: free-text details useful for triage
    - metadata: optional structured metadata (rule id, logical id, etc.)
    """
    resource: str
    issue: str
    severity: int
    details: str = ""
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass
class DeploymentEnv:
    """Target account and region. A None account defers to CDK_DEFAULT_ACCOUNT."""
    account: Optional[str] = None
    region: str = "us-east-1"


@dataclass
class GitScanningConfig:
    """
    Deployment parameters for the weekly scanning job.

    The operator ARN is the only human identity allowed through the
    report bucket policy besides the job role.
    """
    operator_arn: str
    env: DeploymentEnv = field(default_factory=DeploymentEnv)
    bucket_name: str = "git-scanning-reports-bucket"
    repository_name: str = "git-scanning-repo"
    image_tag: str = "latest"
    secret_name: str = "github-token"
    org_name: str = "gitleaks"
    parallel_jobs: int = 16
    cpu: float = 4
    memory_gib: int = 8
    ephemeral_storage_gib: int = 100
    schedule: Dict[str, str] = field(
        default_factory=lambda: dict(DEFAULT_SCHEDULE)
    )
    retry_attempts: int = 3
    job_timeout_hours: int = 24
    max_azs: int = 1
    alert_email: Optional[str] = None

    def container_environment(self) -> Dict[str, str]:
        """Plain environment variables handed to the scanning container."""
        return {
            "S3_BUCKET_NAME": self.bucket_name,
            "GH_ORG_NAME": self.org_name,
            "PARALLEL_JOBS": str(self.parallel_jobs),
        }
