# tests/test_live.py
"""
Live-mode verification of the report bucket.

- Uses moto to mock AWS S3.
- Builds the bucket the way the stack declares it, then breaks it.
"""

import json

import boto3
import pytest
from moto import mock_aws

from audit.live import scan_bucket_policy_from_text, verify_bucket_live
from tests.conftest import OPERATOR_ARN

BUCKET = "git-scanning-reports-bucket"
ROLE_ARN = "arn:aws:iam::123456789012:role/GitScanningBatchJobRole"


def carve_out_policy(bucket, allowed):
    arn = f"arn:aws:s3:::{bucket}"
    return json.dumps({
        "Version": "2012-10-17",
        "Statement": [
            {
                "Effect": "Deny",
                "Principal": {"AWS": "*"},
                "Action": "s3:*",
                "Resource": [arn, f"{arn}/*"],
                "Condition": {"Bool": {"aws:SecureTransport": "false"}},
            },
            {
                "Effect": "Deny",
                "Principal": {"AWS": "*"},
                "Action": "s3:*",
                "Resource": [arn, f"{arn}/*"],
                "Condition": {"StringNotLike": {"aws:PrincipalArn": allowed}},
            },
        ],
    })


def create_hardened_bucket(s3, bucket=BUCKET):
    s3.create_bucket(Bucket=bucket)
    s3.put_bucket_versioning(Bucket=bucket, VersioningConfiguration={"Status": "Enabled"})
    s3.put_bucket_encryption(
        Bucket=bucket,
        ServerSideEncryptionConfiguration={
            "Rules": [{"ApplyServerSideEncryptionByDefault": {"SSEAlgorithm": "AES256"}}]
        },
    )
    s3.put_bucket_policy(Bucket=bucket, Policy=carve_out_policy(bucket, [ROLE_ARN, OPERATOR_ARN]))
    s3.put_public_access_block(
        Bucket=bucket,
        PublicAccessBlockConfiguration={
            "BlockPublicAcls": True,
            "IgnorePublicAcls": True,
            "BlockPublicPolicy": True,
            "RestrictPublicBuckets": True,
        },
    )


@mock_aws
def test_hardened_bucket_has_no_findings(aws_credentials):
    s3 = boto3.client("s3", region_name="us-east-1")
    create_hardened_bucket(s3)

    findings = verify_bucket_live(boto3.Session(region_name="us-east-1"), BUCKET, ROLE_ARN, OPERATOR_ARN)
    assert findings == []


@mock_aws
def test_bare_bucket_is_flagged(aws_credentials):
    s3 = boto3.client("s3", region_name="us-east-1")
    s3.create_bucket(Bucket="bare-bucket")

    findings = verify_bucket_live(boto3.Session(region_name="us-east-1"), "bare-bucket", ROLE_ARN)
    rule_ids = {f.metadata["rule_id"] for f in findings}
    assert {"GS-S3-001", "GS-S3-003", "GS-S3-005"} <= rule_ids
    assert all(f.resource == "s3://bare-bucket" for f in findings)


@mock_aws
def test_missing_bucket_yields_single_finding(aws_credentials):
    findings = verify_bucket_live(boto3.Session(region_name="us-east-1"), "does-not-exist", ROLE_ARN)
    assert len(findings) == 1
    assert findings[0].issue == "Bucket Unreachable"


def test_policy_without_operator_denies_operator():
    findings = scan_bucket_policy_from_text(BUCKET, carve_out_policy(BUCKET, [ROLE_ARN]), ROLE_ARN, OPERATOR_ARN)
    assert [f.issue for f in findings] == ["Trusted Principal Denied"]
    assert OPERATOR_ARN in findings[0].details


def test_public_read_policy_is_flagged():
    policy = json.dumps({
        "Statement": [{
            "Effect": "Allow",
            "Principal": "*",
            "Action": "s3:GetObject",
            "Resource": f"arn:aws:s3:::{BUCKET}/*",
        }]
    })
    issues = {f.issue for f in scan_bucket_policy_from_text(BUCKET, policy, ROLE_ARN)}
    assert issues == {"Unencrypted Transport Allowed", "Bucket Not Default-Deny"}


@pytest.mark.parametrize("policy_text", [None, "", "{not json"])
def test_missing_or_garbled_policy(policy_text):
    findings = scan_bucket_policy_from_text(BUCKET, policy_text, ROLE_ARN)
    assert len(findings) == 1
    assert findings[0].severity == 9
