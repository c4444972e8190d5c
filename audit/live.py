# audit/live.py
"""
Checks against a deployed report bucket.

- Thin boto3 wrappers fetch the bucket's live configuration.
- verify_bucket_live applies the same rules the template audit uses:
  versioning, default encryption, public access block, TLS-only access and
  the default-deny carve-out for the job role and the operator.
- Each read error becomes a Finding instead of aborting the run.
"""

import json
import logging
from typing import Any, Dict, List, Optional

from botocore.exceptions import ClientError

from audit.policy import default_deny_leaks, denied_principals, is_denied
from config import DEFAULT_SEVERITY_CRITICAL, DEFAULT_SEVERITY_WARNING
from models import Finding

logger = logging.getLogger(__name__)

FOREIGN_PRINCIPALS = ["arn:aws:iam::111122223333:user/intruder"]
PROBE_ACTIONS = ["s3:GetObject", "s3:PutObject", "s3:ListBucket", "s3:DeleteObject"]

# --- Live AWS helpers -----------------------------------------------------


def get_bucket_policy_live(s3, bucket_name: str) -> Optional[str]:
    """
    Return the bucket policy JSON text or None if not present or not accessible.
    """
    try:
        resp = s3.get_bucket_policy(Bucket=bucket_name)
        return resp.get("Policy", "")
    except ClientError as e:
        logger.debug("get_bucket_policy(%s) failed: %s", bucket_name, e)
        return None


def get_public_access_block_live(s3, bucket_name: str) -> Optional[Dict[str, Any]]:
    """
    Return PublicAccessBlock configuration or None if not set or not accessible.
    """
    try:
        resp = s3.get_public_access_block(Bucket=bucket_name)
        return resp.get("PublicAccessBlockConfiguration", {})
    except ClientError:
        return None


def get_bucket_encryption_live(s3, bucket_name: str) -> Optional[Dict[str, Any]]:
    """
    Return bucket encryption configuration or None if not set.
    """
    try:
        return s3.get_bucket_encryption(Bucket=bucket_name)
    except ClientError:
        return None


def get_bucket_versioning_live(s3, bucket_name: str) -> Optional[Dict[str, Any]]:
    try:
        return s3.get_bucket_versioning(Bucket=bucket_name)
    except ClientError:
        return None

# --- High-level verification ----------------------------------------------


def _finding(bucket_name: str, issue: str, severity: int, details: str, rule_id: str) -> Finding:
    return Finding(
        resource=f"s3://{bucket_name}",
        issue=issue,
        severity=severity,
        details=details,
        metadata={"rule_id": rule_id},
    )


def scan_bucket_policy_from_text(bucket_name: str, policy_text: Optional[str],
                                 role_arn: str, operator_arn: Optional[str] = None) -> List[Finding]:
    """
    Inspect a bucket policy text and return Findings for gaps in the carve-out.
    """
    if not policy_text:
        return [_finding(bucket_name, "Missing Bucket Policy", DEFAULT_SEVERITY_CRITICAL,
                         "Bucket policy is missing or could not be read", "GS-S3-005")]
    try:
        policy = json.loads(policy_text)
    except ValueError as e:
        return [_finding(bucket_name, "Unparseable Bucket Policy", DEFAULT_SEVERITY_CRITICAL,
                         f"{e}", "GS-S3-005")]

    findings: List[Finding] = []
    bucket_arn = f"arn:aws:s3:::{bucket_name}"
    object_arn = f"{bucket_arn}/report.json"

    if not is_denied(policy, role_arn, "s3:GetObject", object_arn, {"aws:SecureTransport": "false"}):
        findings.append(_finding(bucket_name, "Unencrypted Transport Allowed", DEFAULT_SEVERITY_WARNING,
                                 "No Deny statement for aws:SecureTransport=false", "GS-S3-004"))

    leaks = default_deny_leaks(policy, FOREIGN_PRINCIPALS, PROBE_ACTIONS, [bucket_arn, object_arn])
    if leaks:
        findings.append(_finding(bucket_name, "Bucket Not Default-Deny", DEFAULT_SEVERITY_CRITICAL,
                                 "Not explicitly denied: " + "; ".join(leaks[:5]), "GS-S3-005"))

    for trusted in denied_principals(policy, [role_arn, operator_arn], "s3:GetObject", object_arn):
        findings.append(_finding(bucket_name, "Trusted Principal Denied", DEFAULT_SEVERITY_WARNING,
                                 f"{trusted} is denied s3:GetObject by the bucket policy", "GS-S3-005"))
    return findings


def scan_bucket_configuration(s3, bucket_name: str) -> List[Finding]:
    """
    Check bucket-level protections.
    Returns Findings for:
    - Versioning disabled
    - Missing default encryption
    - Public access block missing or permissive
    """
    findings: List[Finding] = []

    versioning = get_bucket_versioning_live(s3, bucket_name)
    if versioning is None or versioning.get("Status") != "Enabled":
        findings.append(_finding(bucket_name, "Versioning Not Enabled", DEFAULT_SEVERITY_WARNING,
                                 f"Versioning status: {(versioning or {}).get('Status')}", "GS-S3-001"))

    if get_bucket_encryption_live(s3, bucket_name) is None:
        findings.append(_finding(bucket_name, "Missing Default Encryption", DEFAULT_SEVERITY_WARNING,
                                 "No default bucket encryption configured", "GS-S3-002"))

    pab = get_public_access_block_live(s3, bucket_name)
    if pab is None:
        findings.append(_finding(bucket_name, "Public Access Block Unknown", DEFAULT_SEVERITY_CRITICAL,
                                 "Could not read PublicAccessBlock configuration", "GS-S3-003"))
    else:
        for k in ("BlockPublicAcls", "IgnorePublicAcls", "BlockPublicPolicy", "RestrictPublicBuckets"):
            if pab.get(k) is not True:
                findings.append(_finding(bucket_name, "Public Access Block Permissive",
                                         DEFAULT_SEVERITY_CRITICAL, f"{k} is {pab.get(k)}", "GS-S3-003"))
                break
    return findings


def verify_bucket_live(session, bucket_name: str, role_arn: str,
                       operator_arn: Optional[str] = None) -> List[Finding]:
    """
    High-level live verification of the deployed report bucket.

    - Records a single Finding if the bucket cannot be reached at all.
    - Otherwise runs configuration and policy checks and aggregates findings.
    """
    s3 = session.client("s3")
    try:
        s3.head_bucket(Bucket=bucket_name)
    except ClientError as e:
        return [_finding(bucket_name, "Bucket Unreachable", DEFAULT_SEVERITY_CRITICAL, str(e), "GS-S3-000")]

    findings: List[Finding] = []
    findings.extend(scan_bucket_configuration(s3, bucket_name))
    findings.extend(scan_bucket_policy_from_text(
        bucket_name, get_bucket_policy_live(s3, bucket_name), role_arn, operator_arn))
    logger.info("Live verification of %s produced %d finding(s)", bucket_name, len(findings))
    return findings
