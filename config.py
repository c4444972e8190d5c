"""
Central configuration and tunable constants.

- Defaults below can be overridden by a JSON file, environment variables or
  CDK context (`cdk synth -c org_name=...`), in that order.
- Severity thresholds are centralized for easy tuning.
"""

import logging
import os
import re
from typing import Any, Dict, Mapping, Optional

from audit.schedule import parse_cron, schedule_expression
from models import DEFAULT_SCHEDULE, DeploymentEnv, GitScanningConfig
from utils import load_json_file

logger = logging.getLogger(__name__)

# Severity scale: 0 (info) to 10 (critical)
DEFAULT_SEVERITY_CRITICAL = 9
DEFAULT_SEVERITY_HIGH = 8
DEFAULT_SEVERITY_WARNING = 5
# audit/verify exit non-zero at or above this severity
DEFAULT_SEVERITY_FAIL_THRESHOLD = 8

DEFAULT_AWS_REGION = "us-east-1"
STACK_ID = "GitScanningStack"

# Fixed physical names
COMPUTE_ENVIRONMENT_NAME = "git-scanning-compute-env"
JOB_QUEUE_NAME = "git-scanning-job-queue"
JOB_DEFINITION_NAME = "git-scanning-job-definition"
JOB_NAME = "git-scanning-job"
ALERTS_TOPIC_NAME = "git-scanning-alerts"

EXECUTION_SERVICE_PRINCIPAL = "ecs-tasks.amazonaws.com"
SECRET_ENV_VAR = "GH_TOKEN"
# Bucket-scoped actions granted to the job role instead of AmazonS3FullAccess
REPORT_BUCKET_ACTIONS = [
    "s3:GetBucketLocation",
    "s3:GetObject",
    "s3:ListBucket",
    "s3:PutObject",
]

FARGATE_CPU_VALUES = (0.25, 0.5, 1, 2, 4, 8, 16)
SCHEDULE_KEYS = ("minute", "hour", "week_day")

OPERATOR_ARN_PATTERN = re.compile(r"^arn:aws[a-z-]*:iam::\d{12}:(user|role)/[\w+=,.@/-]+$")

# field name -> environment variable
ENV_OVERRIDES = {
    "bucket_name": "GIT_SCANNING_BUCKET_NAME",
    "repository_name": "GIT_SCANNING_REPOSITORY_NAME",
    "image_tag": "GIT_SCANNING_IMAGE_TAG",
    "secret_name": "GIT_SCANNING_SECRET_NAME",
    "org_name": "GH_ORG_NAME",
    "parallel_jobs": "PARALLEL_JOBS",
    "operator_arn": "GIT_SCANNING_OPERATOR_ARN",
    "retry_attempts": "GIT_SCANNING_RETRY_ATTEMPTS",
    "alert_email": "GIT_SCANNING_ALERT_EMAIL",
}

FIELD_TYPES = {
    "bucket_name": str,
    "repository_name": str,
    "image_tag": str,
    "secret_name": str,
    "org_name": str,
    "parallel_jobs": int,
    "operator_arn": str,
    "cpu": float,
    "memory_gib": int,
    "ephemeral_storage_gib": int,
    "retry_attempts": int,
    "job_timeout_hours": int,
    "max_azs": int,
    "alert_email": str,
}


def _coerce(name: str, value: Any) -> Any:
    converter = FIELD_TYPES[name]
    try:
        return converter(value)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid value for {name}: {value!r}") from e


def _apply(values: Dict[str, Any], overrides: Mapping[str, Any], source: str) -> None:
    for name, value in overrides.items():
        if name in ("env", "schedule"):
            continue
        if name not in FIELD_TYPES:
            raise ValueError(f"Unknown configuration key in {source}: {name}")
        if value is None:
            # null in JSON leaves the field at its default
            continue
        values[name] = _coerce(name, value)
        logger.debug("config %s set from %s", name, source)


def _schedule_values(data: Mapping[str, Any]) -> Dict[str, str]:
    # cron fields are strings; JSON files often carry numbers
    return {key: str(value) for key, value in (data.get("schedule") or {}).items()}


def validate_config(config: GitScanningConfig) -> GitScanningConfig:
    """
    Raise ValueError if the configuration cannot produce a safe deployment.
    """
    if not config.operator_arn:
        raise ValueError(
            "operator_arn is required (set GIT_SCANNING_OPERATOR_ARN or add it to the config file)"
        )
    if not OPERATOR_ARN_PATTERN.match(config.operator_arn):
        raise ValueError(f"operator_arn is not an IAM user or role ARN: {config.operator_arn}")
    if config.parallel_jobs < 1:
        raise ValueError("parallel_jobs must be at least 1")
    if not 1 <= config.retry_attempts <= 10:
        raise ValueError("retry_attempts must be between 1 and 10")
    if config.cpu not in FARGATE_CPU_VALUES:
        raise ValueError(f"cpu must be one of {FARGATE_CPU_VALUES}, got {config.cpu}")
    if config.job_timeout_hours < 1:
        raise ValueError("job_timeout_hours must be at least 1")
    unknown = set(config.schedule) - set(SCHEDULE_KEYS)
    if unknown:
        raise ValueError(f"Unsupported schedule keys: {sorted(unknown)}")
    try:
        parse_cron(schedule_expression(config.schedule))
    except ValueError as e:
        raise ValueError(f"Invalid schedule: {e}") from e
    return config


def load_config(app=None, config_file: Optional[str] = None,
                environ: Optional[Mapping[str, str]] = None) -> GitScanningConfig:
    """
    Build a validated GitScanningConfig.

    Precedence (low -> high): defaults, JSON file, environment, CDK context.
    The JSON file path may also come from the `config_file` context key.
    """
    environ = os.environ if environ is None else environ
    if config_file is None and app is not None:
        config_file = app.node.try_get_context("config_file")

    values: Dict[str, Any] = {}
    env_values: Dict[str, Any] = {}
    schedule = dict(DEFAULT_SCHEDULE)

    if config_file:
        logger.info("Loading configuration from %s", config_file)
        data = load_json_file(config_file)
        _apply(values, data, config_file)
        env_values.update(data.get("env", {}))
        schedule.update(_schedule_values(data))

    _apply(
        values,
        {name: environ[var] for name, var in ENV_OVERRIDES.items() if environ.get(var)},
        "environment",
    )
    if environ.get("GIT_SCANNING_ACCOUNT"):
        env_values["account"] = environ["GIT_SCANNING_ACCOUNT"]
    region = environ.get("GIT_SCANNING_REGION") or environ.get("AWS_REGION")
    if region:
        env_values["region"] = region

    if app is not None:
        context = {}
        for name in FIELD_TYPES:
            value = app.node.try_get_context(name)
            if value is not None:
                context[name] = value
        _apply(values, context, "context")

    account = env_values.get("account") or environ.get("CDK_DEFAULT_ACCOUNT")
    config = GitScanningConfig(
        operator_arn=values.pop("operator_arn", ""),
        env=DeploymentEnv(
            account=str(account) if account else None,
            region=env_values.get("region") or DEFAULT_AWS_REGION,
        ),
        schedule=schedule,
        **values,
    )
    return validate_config(config)


def load_schedule(config_file: Optional[str] = None) -> Dict[str, str]:
    """
    Return the schedule alone, without requiring a deployable configuration.
    """
    schedule = dict(DEFAULT_SCHEDULE)
    if config_file:
        schedule.update(_schedule_values(load_json_file(config_file)))
    return schedule
