# tests/test_stack.py
"""
Synthesis tests for GitScanningStack.

- Uses aws_cdk.assertions.Template to check the resource graph.
- Covers the container contract, identity boundary and trigger shape.
"""

import json

from aws_cdk.assertions import Match

from audit.policy import as_list
from audit.template import public_subnet_ids, references, resources_of_type
from models import GitScanningConfig
from tests.conftest import OPERATOR_ARN, synth_template


def _only(template_json, resource_type):
    found = list(resources_of_type(template_json, resource_type))
    assert len(found) == 1, f"expected one {resource_type}, got {len(found)}"
    return found[0]


def test_report_bucket_is_versioned_encrypted_and_private(template):
    template.has_resource_properties("AWS::S3::Bucket", {
        "BucketName": "git-scanning-reports-bucket",
        "VersioningConfiguration": {"Status": "Enabled"},
        "BucketEncryption": {
            "ServerSideEncryptionConfiguration": [
                {"ServerSideEncryptionByDefault": {"SSEAlgorithm": "AES256"}}
            ]
        },
        "PublicAccessBlockConfiguration": {
            "BlockPublicAcls": True,
            "BlockPublicPolicy": True,
            "IgnorePublicAcls": True,
            "RestrictPublicBuckets": True,
        },
    })


def test_bucket_policy_denies_everyone_but_role_and_operator(template):
    template.has_resource_properties("AWS::S3::BucketPolicy", {
        "PolicyDocument": {
            "Statement": Match.array_with([
                Match.object_like({
                    "Effect": "Deny",
                    "Principal": {"AWS": "*"},
                    "Action": "s3:*",
                    "Condition": {
                        "StringNotLike": {
                            "aws:PrincipalArn": [Match.any_value(), OPERATOR_ARN],
                        }
                    },
                })
            ])
        }
    })


def test_bucket_policy_rejects_plain_http(template):
    template.has_resource_properties("AWS::S3::BucketPolicy", {
        "PolicyDocument": {
            "Statement": Match.array_with([
                Match.object_like({
                    "Effect": "Deny",
                    "Condition": {"Bool": {"aws:SecureTransport": "false"}},
                })
            ])
        }
    })


def test_job_role_trusts_only_ecs_tasks(template_json):
    _, job_def = _only(template_json, "AWS::Batch::JobDefinition")
    role_id = job_def["ContainerProperties"]["JobRoleArn"]["Fn::GetAtt"][0]
    trust = template_json["Resources"][role_id]["Properties"]["AssumeRolePolicyDocument"]
    assert trust["Statement"] == [{
        "Action": "sts:AssumeRole",
        "Effect": "Allow",
        "Principal": {"Service": "ecs-tasks.amazonaws.com"},
    }]


def test_job_role_has_bucket_scoped_s3_access_only(template_json):
    assert "AmazonS3FullAccess" not in json.dumps(template_json)
    _, job_def = _only(template_json, "AWS::Batch::JobDefinition")
    role_id = job_def["ContainerProperties"]["JobRoleArn"]["Fn::GetAtt"][0]
    statements = [
        stmt
        for _, props in resources_of_type(template_json, "AWS::IAM::Policy")
        if references(props["Roles"], role_id)
        for stmt in props["PolicyDocument"]["Statement"]
    ]
    s3_statements = [s for s in statements if any(a.startswith("s3:") for a in as_list(s["Action"]))]
    assert len(s3_statements) == 1
    assert sorted(as_list(s3_statements[0]["Action"])) == [
        "s3:GetBucketLocation", "s3:GetObject", "s3:ListBucket", "s3:PutObject",
    ]
    assert "*" not in s3_statements[0]["Resource"]
    assert any(
        "secretsmanager:GetSecretValue" in as_list(s["Action"]) for s in statements
    )


def test_execution_role_is_granted_image_pull(template):
    template.has_resource_properties("AWS::IAM::Policy", {
        "PolicyDocument": {
            "Statement": Match.array_with([
                Match.object_like({
                    "Action": Match.array_with(["ecr:BatchGetImage"]),
                    "Effect": "Allow",
                })
            ])
        }
    })


def test_job_definition_environment_contract(template_json):
    _, job_def = _only(template_json, "AWS::Batch::JobDefinition")
    container = job_def["ContainerProperties"]
    environment = {e["Name"]: e["Value"] for e in container["Environment"]}
    assert environment == {
        "S3_BUCKET_NAME": "git-scanning-reports-bucket",
        "GH_ORG_NAME": "gitleaks",
        "PARALLEL_JOBS": "16",
    }
    assert [s["Name"] for s in container["Secrets"]] == ["GH_TOKEN"]


def test_job_definition_shape_and_retry(template):
    template.has_resource_properties("AWS::Batch::JobDefinition", {
        "JobDefinitionName": "git-scanning-job-definition",
        "PlatformCapabilities": ["FARGATE"],
        "ContainerProperties": Match.object_like({
            "ResourceRequirements": Match.array_with([
                {"Type": "MEMORY", "Value": "8192"},
            ]),
            "EphemeralStorage": {"SizeInGiB": 100},
        }),
        "RetryStrategy": {
            "Attempts": 3,
            "EvaluateOnExit": Match.array_with([
                Match.object_like({"Action": "RETRY"}),
            ]),
        },
        "Timeout": {"AttemptDurationSeconds": 24 * 3600},
    })
    template.has_resource_properties("AWS::Batch::JobDefinition", {
        "ContainerProperties": Match.object_like({
            "ResourceRequirements": Match.array_with([{"Type": "VCPU", "Value": "4"}]),
        }),
    })


def test_job_image_comes_from_stack_repository(template_json):
    repo_id, repo = _only(template_json, "AWS::ECR::Repository")
    assert repo["RepositoryName"] == "git-scanning-repo"
    _, job_def = _only(template_json, "AWS::Batch::JobDefinition")
    image = job_def["ContainerProperties"]["Image"]
    assert not isinstance(image, str)
    assert references(image, repo_id)


def test_compute_environment_uses_private_subnets_only(template_json):
    _, compute = _only(template_json, "AWS::Batch::ComputeEnvironment")
    resources = compute["ComputeResources"]
    assert resources["Type"] == "FARGATE"
    assert resources["MaxvCpus"] == 4
    subnet_ids = [s["Ref"] for s in resources["Subnets"]]
    assert subnet_ids
    public = public_subnet_ids(template_json)
    assert public
    assert not set(subnet_ids) & public
    assert all("Private" in s for s in subnet_ids)


def test_job_queue_binds_single_compute_environment(template_json):
    compute_id, _ = _only(template_json, "AWS::Batch::ComputeEnvironment")
    _, queue = _only(template_json, "AWS::Batch::JobQueue")
    assert queue["JobQueueName"] == "git-scanning-job-queue"
    order = queue["ComputeEnvironmentOrder"]
    assert len(order) == 1
    assert order[0]["Order"] == 1
    assert references(order[0]["ComputeEnvironment"], compute_id)


def test_single_weekly_schedule_targets_queue_and_definition(template_json):
    queue_id, _ = _only(template_json, "AWS::Batch::JobQueue")
    job_def_id, _ = _only(template_json, "AWS::Batch::JobDefinition")
    scheduled = [
        props for _, props in resources_of_type(template_json, "AWS::Events::Rule")
        if "ScheduleExpression" in props
    ]
    assert len(scheduled) == 1
    rule = scheduled[0]
    assert rule["ScheduleExpression"] == "cron(0 0 ? * MON *)"
    assert len(rule["Targets"]) == 1
    target = rule["Targets"][0]
    assert references(target["Arn"], queue_id)
    assert references(target["BatchParameters"]["JobDefinition"], job_def_id)
    assert target["BatchParameters"]["JobName"] == "git-scanning-job"


def test_failed_jobs_are_routed_to_alert_topic(template_json):
    topic_id, topic = _only(template_json, "AWS::SNS::Topic")
    assert topic["TopicName"] == "git-scanning-alerts"
    alert_rules = [
        props for _, props in resources_of_type(template_json, "AWS::Events::Rule")
        if "EventPattern" in props
    ]
    assert len(alert_rules) == 1
    pattern = alert_rules[0]["EventPattern"]
    assert pattern["source"] == ["aws.batch"]
    assert pattern["detail-type"] == ["Batch Job State Change"]
    assert pattern["detail"]["status"] == ["FAILED"]
    assert references(alert_rules[0]["Targets"][0]["Arn"], topic_id)


def test_alert_email_adds_subscription():
    template = synth_template(GitScanningConfig(operator_arn=OPERATOR_ARN, alert_email="ops@example.com"))
    template.resource_count_is("AWS::SNS::Subscription", 1)
    template.has_resource_properties("AWS::SNS::Subscription", {
        "Protocol": "email",
        "Endpoint": "ops@example.com",
    })


def test_no_subscription_without_alert_email(template):
    template.resource_count_is("AWS::SNS::Subscription", 0)


def test_custom_parameters_flow_into_container():
    config = GitScanningConfig(
        operator_arn=OPERATOR_ARN,
        bucket_name="other-reports",
        org_name="example-org",
        parallel_jobs=4,
    )
    template = synth_template(config)
    template.has_resource_properties("AWS::Batch::JobDefinition", {
        "ContainerProperties": Match.object_like({
            "Environment": Match.array_with([
                {"Name": "S3_BUCKET_NAME", "Value": "other-reports"},
            ]),
        }),
    })
    template.has_resource_properties("AWS::Batch::JobDefinition", {
        "ContainerProperties": Match.object_like({
            "Environment": Match.array_with([
                {"Name": "PARALLEL_JOBS", "Value": "4"},
            ]),
        }),
    })


def test_network_has_public_and_private_subnets(template):
    template.resource_count_is("AWS::EC2::VPC", 1)
    template.resource_count_is("AWS::EC2::Subnet", 2)
    template.resource_count_is("AWS::EC2::NatGateway", 1)
    template.resource_count_is("AWS::SecretsManager::Secret", 1)
    template.has_resource_properties("AWS::SecretsManager::Secret", {"Name": "github-token"})
