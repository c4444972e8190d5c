#!/usr/bin/env python3
"""CDK application entry point for the git scanning infrastructure."""

from typing import Optional, Tuple

import aws_cdk as cdk

from config import STACK_ID, load_config
from infra.stack import GitScanningStack
from models import GitScanningConfig


def build_app(config: Optional[GitScanningConfig] = None,
              outdir: Optional[str] = None) -> Tuple[cdk.App, GitScanningStack]:
    app = cdk.App(outdir=outdir) if outdir else cdk.App()
    config = config or load_config(app=app)
    stack = GitScanningStack(
        app,
        STACK_ID,
        env=cdk.Environment(account=config.env.account, region=config.env.region),
        description="Weekly secret scanning of GitHub repositories on AWS Batch",
        config=config,
    )
    return app, stack


def main() -> None:
    app, _ = build_app()
    app.synth()


if __name__ == "__main__":
    main()
