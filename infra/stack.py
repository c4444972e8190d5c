# infra/stack.py
"""
CDK stack for the weekly git secret-scanning job.

Resources, leaf-first:
- VPC with a public (egress only) and a private subnet group
- ECR repository holding the scanner image
- versioned, encrypted report bucket with a default-deny carve-out policy
- Secrets Manager entry for the GitHub token
- job role assumed by ECS tasks
- Fargate compute environment, job queue and job definition for AWS Batch
- EventBridge schedule rule and a failed-job alert topic
"""

import logging
import math

from aws_cdk import (
    CfnOutput,
    Duration,
    Size,
    Stack,
    aws_batch as batch,
    aws_ec2 as ec2,
    aws_ecr as ecr,
    aws_ecs as ecs,
    aws_events as events,
    aws_events_targets as targets,
    aws_iam as iam,
    aws_s3 as s3,
    aws_secretsmanager as secretsmanager,
    aws_sns as sns,
    aws_sns_subscriptions as subscriptions,
)
from constructs import Construct

from config import (
    ALERTS_TOPIC_NAME,
    COMPUTE_ENVIRONMENT_NAME,
    EXECUTION_SERVICE_PRINCIPAL,
    JOB_DEFINITION_NAME,
    JOB_NAME,
    JOB_QUEUE_NAME,
    REPORT_BUCKET_ACTIONS,
    SECRET_ENV_VAR,
)
from models import GitScanningConfig

logger = logging.getLogger(__name__)


class GitScanningStack(Stack):
    def __init__(self, scope: Construct, construct_id: str, *, config: GitScanningConfig, **kwargs) -> None:
        super().__init__(scope, construct_id, **kwargs)
        self.config = config
        logger.info("Declaring %s (bucket=%s, org=%s)", construct_id, config.bucket_name, config.org_name)

        # The public subnets only exist so the private ones get a NAT route for
        # ECR pulls, Secrets Manager reads and S3 uploads.
        self.vpc = ec2.Vpc(
            self, "GitScanningVPC",
            max_azs=config.max_azs,
            subnet_configuration=[
                ec2.SubnetConfiguration(
                    name="Public",
                    subnet_type=ec2.SubnetType.PUBLIC,
                    cidr_mask=24,
                ),
                ec2.SubnetConfiguration(
                    name="Private",
                    subnet_type=ec2.SubnetType.PRIVATE_WITH_EGRESS,
                    cidr_mask=24,
                ),
            ],
        )

        self.repository = ecr.Repository(
            self, "GitScanningRepository",
            repository_name=config.repository_name,
            image_scan_on_push=True,
        )

        self.reports_bucket = s3.Bucket(
            self, "GitScanningReportingBucket",
            bucket_name=config.bucket_name,
            versioned=True,
            block_public_access=s3.BlockPublicAccess.BLOCK_ALL,
            encryption=s3.BucketEncryption.S3_MANAGED,
            enforce_ssl=True,
        )

        # Only the name is declared here; the token value is set out of band.
        self.github_secret = secretsmanager.Secret(
            self, "GitHubSecret",
            secret_name=config.secret_name,
        )

        self.job_role = iam.Role(
            self, "GitScanningBatchJobRole",
            assumed_by=iam.ServicePrincipal(EXECUTION_SERVICE_PRINCIPAL),
            description="Role assumed by the git scanning container",
        )
        self.job_role.add_to_policy(
            iam.PolicyStatement(
                effect=iam.Effect.ALLOW,
                actions=REPORT_BUCKET_ACTIONS,
                resources=[
                    self.reports_bucket.bucket_arn,
                    self.reports_bucket.arn_for_objects("*"),
                ],
            )
        )
        self.github_secret.grant_read(self.job_role)

        # Reports can contain live secrets found in scanned repositories:
        # everyone except the job role and the operator is denied.
        self.reports_bucket.add_to_resource_policy(
            iam.PolicyStatement(
                sid="DenyAllExceptJobRoleAndOperator",
                effect=iam.Effect.DENY,
                principals=[iam.AnyPrincipal()],
                actions=["s3:*"],
                resources=[
                    self.reports_bucket.bucket_arn,
                    self.reports_bucket.arn_for_objects("*"),
                ],
                conditions={
                    "StringNotLike": {
                        "aws:PrincipalArn": [
                            self.job_role.role_arn,
                            config.operator_arn,
                        ],
                    },
                },
            )
        )

        # maxv_cpus equal to one job's vCPUs keeps weekly runs from overlapping.
        self.compute_environment = batch.FargateComputeEnvironment(
            self, "GitScanningComputeEnv",
            compute_environment_name=COMPUTE_ENVIRONMENT_NAME,
            vpc=self.vpc,
            vpc_subnets=ec2.SubnetSelection(subnet_type=ec2.SubnetType.PRIVATE_WITH_EGRESS),
            maxv_cpus=max(1, math.ceil(config.cpu)),
        )

        self.job_queue = batch.JobQueue(
            self, "GitScanningJobQueue",
            job_queue_name=JOB_QUEUE_NAME,
            compute_environments=[
                batch.OrderedComputeEnvironment(
                    compute_environment=self.compute_environment,
                    order=1,
                ),
            ],
        )

        self.container = batch.EcsFargateContainerDefinition(
            self, "GitScanningJobDef",
            image=ecs.ContainerImage.from_ecr_repository(self.repository, config.image_tag),
            cpu=config.cpu,
            memory=Size.gibibytes(config.memory_gib),
            ephemeral_storage_size=Size.gibibytes(config.ephemeral_storage_gib),
            job_role=self.job_role,
            environment=config.container_environment(),
            secrets={
                SECRET_ENV_VAR: batch.Secret.from_secrets_manager(self.github_secret, SECRET_ENV_VAR),
            },
        )

        # Retry only what is likely transient; a failing scan exits immediately.
        self.job_definition = batch.EcsJobDefinition(
            self, "GitScanningJobDefinition",
            job_definition_name=JOB_DEFINITION_NAME,
            container=self.container,
            retry_attempts=config.retry_attempts,
            retry_strategies=[
                batch.RetryStrategy.of(batch.Action.RETRY, batch.Reason.CANNOT_PULL_CONTAINER),
                batch.RetryStrategy.of(
                    batch.Action.RETRY,
                    batch.Reason.custom(on_status_reason="ResourceInitializationError*"),
                ),
                batch.RetryStrategy.of(batch.Action.EXIT, batch.Reason.NON_ZERO_EXIT_CODE),
            ],
            timeout=Duration.hours(config.job_timeout_hours),
        )

        self.schedule_rule = events.Rule(
            self, "GitScanningScheduleRule",
            description="Weekly git secret scan",
            schedule=events.Schedule.cron(**config.schedule),
            targets=[
                targets.BatchJob(
                    self.job_queue.job_queue_arn,
                    self.job_queue,
                    self.job_definition.job_definition_arn,
                    self.job_definition,
                    job_name=JOB_NAME,
                ),
            ],
        )

        self.alerts_topic = sns.Topic(
            self, "GitScanningAlertsTopic",
            topic_name=ALERTS_TOPIC_NAME,
        )
        if config.alert_email:
            self.alerts_topic.add_subscription(subscriptions.EmailSubscription(config.alert_email))

        self.failure_rule = events.Rule(
            self, "GitScanningJobFailedRule",
            description="Notify operators when a scanning job fails after its retries",
            event_pattern=events.EventPattern(
                source=["aws.batch"],
                detail_type=["Batch Job State Change"],
                detail={
                    "status": ["FAILED"],
                    "jobQueue": [self.job_queue.job_queue_arn],
                },
            ),
            targets=[targets.SnsTopic(self.alerts_topic)],
        )

        # Explicit pull grant for the role Batch uses to start the container.
        self.repository.grant_pull(self.container.execution_role)

        CfnOutput(self, "ReportsBucketName", value=self.reports_bucket.bucket_name)
        CfnOutput(self, "RepositoryUri", value=self.repository.repository_uri)
        CfnOutput(self, "JobQueueArn", value=self.job_queue.job_queue_arn)
        CfnOutput(self, "JobDefinitionArn", value=self.job_definition.job_definition_arn)
        CfnOutput(self, "AlertsTopicArn", value=self.alerts_topic.topic_arn)
