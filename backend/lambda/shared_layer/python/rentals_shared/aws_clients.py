"""rentals_shared.aws_clients — Lazy-singleton AWS service clients.

The DynamoDB client is created on first call and cached for the lifetime of
the Lambda container, so cold starts only pay for it when a request actually
touches the store.
"""

from __future__ import annotations

from typing import Optional

import boto3
from botocore.config import Config

from rentals_shared import config

_ddb = None


def _get_ddb(region: Optional[str] = None):
    """Get (or create) the DynamoDB client singleton."""
    global _ddb
    if _ddb is None:
        _ddb = boto3.client(
            "dynamodb",
            region_name=region or config.DYNAMODB_REGION,
            config=Config(retries={"max_attempts": 5, "mode": "standard"}),
        )
    return _ddb
