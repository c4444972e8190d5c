# main.py
"""
CLI entrypoint for the git scanning infrastructure.

- Supports four commands:
  * synth: write the CloudFormation template to an output directory
  * audit: synthesize in memory and check the template's access model (offline)
  * verify: check the deployed report bucket in a live AWS account using boto3.Session
  * schedule: print the next firing times of the weekly trigger
- audit and verify produce JSON, CSV, and HTML reports and print a colorful summary table.
"""

import argparse
import logging
import os
from datetime import datetime, timezone

import boto3

from app import build_app
from audit.live import verify_bucket_live
from audit.schedule import next_firings, schedule_expression
from audit.template import audit_template
from config import DEFAULT_AWS_REGION, DEFAULT_SEVERITY_FAIL_THRESHOLD, load_config, load_schedule
from utils import max_severity, print_summary_and_report_path, save_report

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("git_scanning")


def run_synth(config_file: str = None, outdir: str = "cdk.out") -> str:
    """
    Synthesize the stack into `outdir` and return the template path.
    """
    config = load_config(config_file=config_file)
    app, stack = build_app(config, outdir=outdir)
    assembly = app.synth()
    template_path = os.path.join(assembly.directory, stack.template_file)
    logger.info("Synthesized %s to %s", stack.stack_name, template_path)
    return template_path


def run_audit(config_file: str = None, report_dir: str = "reports", print_table: bool = False) -> int:
    """
    Audit the synthesized template. No AWS access is required in this mode.
    Returns the highest finding severity.
    """
    config = load_config(config_file=config_file)
    logger.info("Auditing synthesized template (bucket=%s)", config.bucket_name)
    app, stack = build_app(config)
    template = app.synth().get_stack_by_name(stack.stack_name).template
    findings = audit_template(template, config)
    report_paths = save_report(
        findings,
        mode="audit",
        extra={"stack": stack.stack_name, "config_file": config_file or "-"},
        out_dir=report_dir,
    )
    print_summary_and_report_path(findings, report_paths, print_full_table=print_table)
    return max_severity(findings)


def run_verify(bucket_name: str, role_arn: str, operator_arn: str = None, region: str = None,
               report_dir: str = "reports", print_table: bool = False) -> int:
    """
    Verify the deployed report bucket against a live AWS account.

    Credentials come from the environment (e.g., aws-vault exec ... -- python main.py verify ...).
    """
    # Resolve region: CLI -> env -> config default
    region = region or os.environ.get("AWS_REGION") or DEFAULT_AWS_REGION
    logger.info("Verifying s3://%s (region=%s)", bucket_name, region)
    session = boto3.Session(region_name=region)

    findings = verify_bucket_live(session, bucket_name, role_arn, operator_arn)
    report_paths = save_report(
        findings,
        mode="verify",
        extra={"region": region, "bucket": bucket_name},
        out_dir=report_dir,
    )
    print_summary_and_report_path(findings, report_paths, print_full_table=print_table)
    return max_severity(findings)


def run_schedule(config_file: str = None, count: int = 4):
    expression = schedule_expression(load_schedule(config_file))
    firings = next_firings(expression, datetime.now(timezone.utc), count)
    print(f"Schedule: {expression}")
    for firing in firings:
        print(f"- {firing.isoformat()}")
    return firings


def parse_args(argv=None):
    p = argparse.ArgumentParser(
        description="Weekly git secret scanning infrastructure (AWS CDK)."
    )
    p.add_argument("--verbose", action="store_true", help="Enable debug logging")
    sub = p.add_subparsers(dest="command", required=True)

    synth = sub.add_parser("synth", help="Synthesize the CloudFormation template")
    synth.add_argument("--config", help="Path to a JSON configuration file")
    synth.add_argument("--outdir", default="cdk.out", help="Cloud assembly directory (default: cdk.out)")

    audit = sub.add_parser("audit", help="Audit the synthesized template offline")
    audit.add_argument("--config", help="Path to a JSON configuration file")

    verify = sub.add_parser("verify", help="Verify the deployed report bucket")
    verify.add_argument("--bucket", default="git-scanning-reports-bucket", help="Report bucket name")
    verify.add_argument("--role-arn", required=True, help="ARN of the job role allowed through the bucket policy")
    verify.add_argument("--operator-arn", help="ARN of the operator allowed through the bucket policy")
    verify.add_argument("--region", help="AWS region (optional)")

    for cmd in (audit, verify):
        cmd.add_argument("--report-dir", default="reports", help="Directory to save reports (default: reports)")
        cmd.add_argument("--print-table", action="store_true", help="Print full findings table to stdout")

    schedule = sub.add_parser("schedule", help="Show the next firing times")
    schedule.add_argument("--config", help="Path to a JSON configuration file")
    schedule.add_argument("--count", type=int, default=4, help="Number of firings to show (default: 4)")
    return p.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        if args.command == "synth":
            run_synth(args.config, outdir=args.outdir)
            return
        if args.command == "schedule":
            run_schedule(args.config, count=args.count)
            return
        if args.command == "audit":
            worst = run_audit(args.config, report_dir=args.report_dir, print_table=args.print_table)
        else:
            worst = run_verify(
                args.bucket,
                args.role_arn,
                operator_arn=args.operator_arn,
                region=args.region,
                report_dir=args.report_dir,
                print_table=args.print_table,
            )
    except (ValueError, FileNotFoundError) as e:
        raise SystemExit(f"error: {e}")

    if worst >= DEFAULT_SEVERITY_FAIL_THRESHOLD:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
