# audit/template.py
"""
Audit a synthesized CloudFormation template of GitScanningStack.

- Intrinsic functions are resolved into placeholder values (fake account id,
  ARNs built from logical ids) so policies can be evaluated statically.
- Each check returns zero or more Finding objects; an empty list means the
  deployed topology matches the intended access model.
"""

import logging
from typing import Any, Dict, Iterator, List, Optional, Set, Tuple

from audit.policy import (
    as_list,
    default_deny_leaks,
    denied_principals,
    is_denied,
    trust_policy_only_allows,
)
from config import (
    DEFAULT_SEVERITY_CRITICAL,
    DEFAULT_SEVERITY_HIGH,
    DEFAULT_SEVERITY_WARNING,
    EXECUTION_SERVICE_PRINCIPAL,
    SECRET_ENV_VAR,
)
from models import Finding, GitScanningConfig

logger = logging.getLogger(__name__)

PLACEHOLDER_ACCOUNT = "000000000000"
PLACEHOLDER_REGION = "us-east-1"
# Principals that must never get through the report bucket policy
FOREIGN_PRINCIPALS = [
    "arn:aws:iam::111122223333:user/intruder",
    f"arn:aws:iam::{PLACEHOLDER_ACCOUNT}:user/same-account-user",
    f"arn:aws:iam::{PLACEHOLDER_ACCOUNT}:role/some-other-role",
]
PROBE_ACTIONS = ["s3:GetObject", "s3:PutObject", "s3:ListBucket", "s3:DeleteObject", "s3:PutBucketPolicy"]
EXPECTED_ENV_NAMES = {"S3_BUCKET_NAME", "GH_ORG_NAME", "PARALLEL_JOBS"}
PUBLIC_ACCESS_FLAGS = ["BlockPublicAcls", "BlockPublicPolicy", "IgnorePublicAcls", "RestrictPublicBuckets"]

_PSEUDO = {
    "AWS::AccountId": PLACEHOLDER_ACCOUNT,
    "AWS::Region": PLACEHOLDER_REGION,
    "AWS::Partition": "aws",
    "AWS::URLSuffix": "amazonaws.com",
    "AWS::StackName": "GitScanningStack",
}

# --- Template helpers -----------------------------------------------------


def resources_of_type(template: Dict[str, Any], resource_type: str) -> Iterator[Tuple[str, Dict[str, Any]]]:
    for logical_id, resource in template.get("Resources", {}).items():
        if resource.get("Type") == resource_type:
            yield logical_id, resource.get("Properties", {}) or {}


def _physical_name(template: Dict[str, Any], logical_id: str) -> str:
    resource = template.get("Resources", {}).get(logical_id, {})
    props = resource.get("Properties", {}) or {}
    for key in ("BucketName", "RoleName", "RepositoryName", "TopicName", "JobQueueName"):
        if isinstance(props.get(key), str):
            return props[key]
    return logical_id


def _arn_for(template: Dict[str, Any], logical_id: str) -> str:
    resource_type = template.get("Resources", {}).get(logical_id, {}).get("Type", "")
    name = _physical_name(template, logical_id)
    if resource_type == "AWS::IAM::Role":
        return f"arn:aws:iam::{PLACEHOLDER_ACCOUNT}:role/{name}"
    if resource_type == "AWS::S3::Bucket":
        return f"arn:aws:s3:::{name}"
    if resource_type == "AWS::ECR::Repository":
        return f"arn:aws:ecr:{PLACEHOLDER_REGION}:{PLACEHOLDER_ACCOUNT}:repository/{name}"
    return f"arn:aws:cloudformation:{PLACEHOLDER_REGION}:{PLACEHOLDER_ACCOUNT}:{logical_id}"


def resolve(value: Any, template: Dict[str, Any]) -> Any:
    """
    Replace Ref / Fn::GetAtt / Fn::Join / Fn::Split / Fn::Select / Fn::GetAZs with plain values.
    """
    if isinstance(value, list):
        return [resolve(v, template) for v in value]
    if not isinstance(value, dict):
        return value
    if len(value) == 1:
        fn, arg = next(iter(value.items()))
        if fn == "Ref":
            if arg in _PSEUDO:
                return _PSEUDO[arg]
            return _physical_name(template, arg)
        if fn == "Fn::GetAtt":
            logical_id, attribute = arg if isinstance(arg, list) else arg.split(".", 1)
            if attribute == "Arn":
                return _arn_for(template, logical_id)
            return f"{logical_id}.{attribute}"
        if fn == "Fn::Join":
            sep, parts = arg
            return sep.join(str(p) for p in resolve(parts, template))
        if fn == "Fn::GetAZs":
            region = resolve(arg, template) or PLACEHOLDER_REGION
            return [f"{region}a", f"{region}b", f"{region}c"]
        if fn == "Fn::Split":
            sep, source = arg
            return str(resolve(source, template)).split(sep)
        if fn == "Fn::Select":
            index, items = arg
            return resolve(items, template)[int(index)]
    return {k: resolve(v, template) for k, v in value.items()}


def references(value: Any, logical_id: str) -> bool:
    """True if `value` contains a Ref or Fn::GetAtt pointing at `logical_id`."""
    if isinstance(value, list):
        return any(references(v, logical_id) for v in value)
    if not isinstance(value, dict):
        return False
    if value.get("Ref") == logical_id:
        return True
    get_att = value.get("Fn::GetAtt")
    if get_att is not None:
        target = get_att[0] if isinstance(get_att, list) else str(get_att).split(".", 1)[0]
        if target == logical_id:
            return True
    return any(references(v, logical_id) for v in value.values())


def _referenced_id(value: Any, template: Dict[str, Any], resource_type: str) -> Optional[str]:
    for logical_id, _ in resources_of_type(template, resource_type):
        if references(value, logical_id):
            return logical_id
    return None


def public_subnet_ids(template: Dict[str, Any]) -> Set[str]:
    """
    Subnets that auto-assign public IPs or route 0.0.0.0/0 to an internet gateway.
    """
    public: Set[str] = set()
    igw_route_tables: Set[str] = set()
    for _, props in resources_of_type(template, "AWS::EC2::Route"):
        if props.get("DestinationCidrBlock") == "0.0.0.0/0" and "GatewayId" in props:
            igw_route_tables.add(str(resolve(props.get("RouteTableId"), template)))
    for _, props in resources_of_type(template, "AWS::EC2::SubnetRouteTableAssociation"):
        if str(resolve(props.get("RouteTableId"), template)) in igw_route_tables:
            public.add(str(resolve(props.get("SubnetId"), template)))
    for logical_id, props in resources_of_type(template, "AWS::EC2::Subnet"):
        if props.get("MapPublicIpOnLaunch") is True:
            public.add(logical_id)
    return public

# --- Checks ----------------------------------------------------------------


def _finding(logical_id: str, issue: str, severity: int, details: str, rule_id: str) -> Finding:
    return Finding(
        resource=f"cfn:{logical_id}",
        issue=issue,
        severity=severity,
        details=details,
        metadata={"rule_id": rule_id, "logical_id": logical_id},
    )


def check_bucket_configuration(template: Dict[str, Any]) -> List[Finding]:
    """
    Versioning, default encryption and public access block on every bucket.
    """
    findings: List[Finding] = []
    for logical_id, props in resources_of_type(template, "AWS::S3::Bucket"):
        versioning = props.get("VersioningConfiguration") or {}
        if versioning.get("Status") != "Enabled":
            findings.append(_finding(
                logical_id, "Versioning Not Enabled", DEFAULT_SEVERITY_WARNING,
                f"VersioningConfiguration: {versioning}", "GS-S3-001"))
        if not (props.get("BucketEncryption") or {}).get("ServerSideEncryptionConfiguration"):
            findings.append(_finding(
                logical_id, "Missing Default Encryption", DEFAULT_SEVERITY_WARNING,
                "No default bucket encryption configured", "GS-S3-002"))
        pab = props.get("PublicAccessBlockConfiguration") or {}
        for flag in PUBLIC_ACCESS_FLAGS:
            if pab.get(flag) is not True:
                findings.append(_finding(
                    logical_id, "Public Access Block Permissive", DEFAULT_SEVERITY_CRITICAL,
                    f"{flag} is {pab.get(flag)}", "GS-S3-003"))
                break
    return findings


def _bucket_policy(template: Dict[str, Any], bucket_id: str) -> Optional[Dict[str, Any]]:
    for _, props in resources_of_type(template, "AWS::S3::BucketPolicy"):
        if references(props.get("Bucket"), bucket_id):
            return resolve(props.get("PolicyDocument", {}), template)
    return None


def check_bucket_policy(template: Dict[str, Any], job_role_id: Optional[str],
                        operator_arn: Optional[str] = None) -> List[Finding]:
    """
    Every bucket must reject plain HTTP and deny everyone except the job role
    and the operator.
    """
    findings: List[Finding] = []
    role_arn = _arn_for(template, job_role_id) if job_role_id else None
    for logical_id, _ in resources_of_type(template, "AWS::S3::Bucket"):
        policy = _bucket_policy(template, logical_id)
        if policy is None:
            findings.append(_finding(
                logical_id, "Missing Bucket Policy", DEFAULT_SEVERITY_CRITICAL,
                "Bucket has no resource policy; access is not restricted to the job role", "GS-S3-005"))
            continue
        bucket_arn = _arn_for(template, logical_id)
        targets = [bucket_arn, f"{bucket_arn}/report.json"]

        probe = role_arn or FOREIGN_PRINCIPALS[0]
        if not is_denied(policy, probe, "s3:GetObject", targets[1], {"aws:SecureTransport": "false"}):
            findings.append(_finding(
                logical_id, "Unencrypted Transport Allowed", DEFAULT_SEVERITY_WARNING,
                "No Deny statement for aws:SecureTransport=false", "GS-S3-004"))

        leaks = default_deny_leaks(policy, FOREIGN_PRINCIPALS, PROBE_ACTIONS, targets)
        if leaks:
            findings.append(_finding(
                logical_id, "Bucket Not Default-Deny", DEFAULT_SEVERITY_CRITICAL,
                "Not explicitly denied: " + "; ".join(leaks[:5]), "GS-S3-005"))

        for trusted in denied_principals(policy, [role_arn, operator_arn], "s3:GetObject", targets[1]):
            findings.append(_finding(
                logical_id, "Trusted Principal Denied", DEFAULT_SEVERITY_WARNING,
                f"{trusted} is denied s3:GetObject by the bucket policy", "GS-S3-005"))
    return findings


def find_job_definitions(template: Dict[str, Any]) -> List[Tuple[str, Dict[str, Any]]]:
    return list(resources_of_type(template, "AWS::Batch::JobDefinition"))


def job_role_id(template: Dict[str, Any]) -> Optional[str]:
    for _, props in find_job_definitions(template):
        container = props.get("ContainerProperties") or {}
        role_id = _referenced_id(container.get("JobRoleArn"), template, "AWS::IAM::Role")
        if role_id:
            return role_id
    return None


def check_job_role(template: Dict[str, Any], role_id: Optional[str]) -> List[Finding]:
    """
    The job role must be assumable only by ECS tasks and must not hold
    account-wide S3 permissions.
    """
    if role_id is None:
        return [_finding(
            "JobDefinition", "Missing Job Role", DEFAULT_SEVERITY_HIGH,
            "No job definition references an IAM role", "GS-IAM-001")]
    findings: List[Finding] = []
    props = template["Resources"][role_id].get("Properties", {})
    trust = resolve(props.get("AssumeRolePolicyDocument", {}), template)
    if not trust_policy_only_allows(trust, EXECUTION_SERVICE_PRINCIPAL):
        findings.append(_finding(
            role_id, "Role Trust Too Broad", DEFAULT_SEVERITY_CRITICAL,
            f"AssumeRolePolicyDocument: {trust}", "GS-IAM-001"))

    for arn in as_list(resolve(props.get("ManagedPolicyArns"), template)):
        if str(arn).endswith("/AmazonS3FullAccess"):
            findings.append(_finding(
                role_id, "Over-broad S3 Grant", DEFAULT_SEVERITY_HIGH,
                f"Managed policy attached: {arn}", "GS-IAM-002"))

    for policy_id, policy_props in resources_of_type(template, "AWS::IAM::Policy"):
        if not references(policy_props.get("Roles"), role_id):
            continue
        document = resolve(policy_props.get("PolicyDocument", {}), template)
        for stmt in as_list(document.get("Statement")):
            if stmt.get("Effect") != "Allow":
                continue
            actions = [str(a).lower() for a in as_list(stmt.get("Action"))]
            s3_actions = [a for a in actions if a == "*" or a.startswith("s3:")]
            if not s3_actions:
                continue
            if "*" in s3_actions or "s3:*" in s3_actions or "*" in as_list(stmt.get("Resource")):
                findings.append(_finding(
                    policy_id, "Over-broad S3 Grant", DEFAULT_SEVERITY_HIGH,
                    f"Statement: {stmt}", "GS-IAM-002"))
    return findings


def check_compute_environment(template: Dict[str, Any]) -> List[Finding]:
    """
    Compute environments may only bind to subnets without a public route.
    """
    findings: List[Finding] = []
    public = public_subnet_ids(template)
    for logical_id, props in resources_of_type(template, "AWS::Batch::ComputeEnvironment"):
        subnets = [str(s) for s in resolve((props.get("ComputeResources") or {}).get("Subnets", []), template)]
        exposed = [s for s in subnets if s in public]
        if not subnets or exposed:
            findings.append(_finding(
                logical_id, "Compute In Public Subnet", DEFAULT_SEVERITY_CRITICAL,
                f"Subnets: {subnets}; public: {exposed}", "GS-BATCH-001"))
    return findings


def check_job_definition(template: Dict[str, Any],
                         config: Optional[GitScanningConfig] = None) -> List[Finding]:
    """
    Image source, container environment contract and retry strategy.
    """
    findings: List[Finding] = []
    for logical_id, props in find_job_definitions(template):
        container = props.get("ContainerProperties") or {}

        image = container.get("Image")
        if _referenced_id(image, template, "AWS::ECR::Repository") is None:
            findings.append(_finding(
                logical_id, "Image Not From Stack Registry", DEFAULT_SEVERITY_HIGH,
                f"Image: {image}", "GS-BATCH-002"))

        environment = {e.get("Name"): resolve(e.get("Value"), template) for e in container.get("Environment", [])}
        secrets = {s.get("Name") for s in container.get("Secrets", [])}
        if set(environment) != EXPECTED_ENV_NAMES or secrets != {SECRET_ENV_VAR}:
            findings.append(_finding(
                logical_id, "Unexpected Container Environment", DEFAULT_SEVERITY_WARNING,
                f"Environment: {sorted(environment)}; secrets: {sorted(secrets)}", "GS-BATCH-003"))
        elif config is not None and environment != config.container_environment():
            findings.append(_finding(
                logical_id, "Container Environment Drift", DEFAULT_SEVERITY_WARNING,
                f"Expected {config.container_environment()}, got {environment}", "GS-BATCH-003"))

        attempts = (props.get("RetryStrategy") or {}).get("Attempts")
        if not attempts or int(attempts) < 2:
            findings.append(_finding(
                logical_id, "No Retry Strategy", DEFAULT_SEVERITY_WARNING,
                f"RetryStrategy: {props.get('RetryStrategy')}", "GS-BATCH-004"))
    return findings


def check_schedule(template: Dict[str, Any]) -> List[Finding]:
    """
    Exactly one scheduled rule must drive the job queue, plus one failure alert rule.
    """
    findings: List[Finding] = []
    scheduled = [(lid, p) for lid, p in resources_of_type(template, "AWS::Events::Rule") if p.get("ScheduleExpression")]
    queues = [lid for lid, _ in resources_of_type(template, "AWS::Batch::JobQueue")]
    driving = [
        lid for lid, p in scheduled
        if any(references(t.get("Arn"), q) for t in p.get("Targets", []) for q in queues)
    ]
    if len(scheduled) != 1 or len(driving) != 1:
        findings.append(_finding(
            "Schedule", "Unexpected Schedule Rules", DEFAULT_SEVERITY_WARNING,
            f"Scheduled rules: {[lid for lid, _ in scheduled]}; targeting the job queue: {driving}",
            "GS-EVENTS-001"))

    alerting = [
        lid for lid, p in resources_of_type(template, "AWS::Events::Rule")
        if "FAILED" in ((p.get("EventPattern") or {}).get("detail") or {}).get("status", [])
    ]
    if not alerting:
        findings.append(_finding(
            "Schedule", "No Failure Alerting", DEFAULT_SEVERITY_WARNING,
            "No EventBridge rule matches failed Batch jobs", "GS-EVENTS-002"))
    return findings


def audit_template(template: Dict[str, Any], config: Optional[GitScanningConfig] = None) -> List[Finding]:
    """
    Run every check against a synthesized template and aggregate findings.
    """
    role_id = job_role_id(template)
    operator_arn = config.operator_arn if config else None
    findings: List[Finding] = []
    findings.extend(check_bucket_configuration(template))
    findings.extend(check_bucket_policy(template, role_id, operator_arn))
    findings.extend(check_job_role(template, role_id))
    findings.extend(check_compute_environment(template))
    findings.extend(check_job_definition(template, config))
    findings.extend(check_schedule(template))
    logger.info("Template audit produced %d finding(s)", len(findings))
    return findings
