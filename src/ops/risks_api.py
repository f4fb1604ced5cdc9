"""Read-only HTTP endpoint listing the most recent risk assessments."""

import json
import logging
from typing import Any, Dict, Optional

from detector.config import load_config, parse_store_connection, setup_logging
from detector.exceptions import ConfigurationError
from detector.store import DynamoDBStore, EventStore

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 100
MAX_LIMIT = 500


def _response(status_code: int, body: Any) -> Dict[str, Any]:
    return {
        "statusCode": status_code,
        "headers": {"Content-Type": "application/json"},
        "body": json.dumps(body, default=str),
    }


def parse_limit(event: Optional[Dict[str, Any]]) -> int:
    """Read `limit` from the query string.

    Raises:
        ValueError: If limit is not an integer between 1 and MAX_LIMIT.
    """
    params = (event or {}).get("queryStringParameters") or {}
    raw = params.get("limit")
    if raw is None or raw == "":
        return DEFAULT_LIMIT
    limit = int(raw)
    if not 1 <= limit <= MAX_LIMIT:
        raise ValueError(f"limit must be between 1 and {MAX_LIMIT}")
    return limit


def lambda_handler(event: Optional[Dict[str, Any]], context: Any, store: Optional[EventStore] = None) -> Dict[str, Any]:
    """GET handler returning recent assessments, newest first."""
    try:
        limit = parse_limit(event)
    except ValueError as e:
        return _response(400, {"error": f"Invalid limit: {e}"})

    if store is None:
        config = load_config()
        setup_logging(config.logging)
        if not config.store.connection_string:
            logger.error("Store connection string not configured")
            return _response(503, {"error": "Store not configured"})
        try:
            store = DynamoDBStore.from_settings(parse_store_connection(config.store.connection_string))
        except ConfigurationError as e:
            logger.error(f"Invalid store configuration: {e}")
            return _response(503, {"error": "Store not configured"})

    try:
        records = store.recent_assessments(limit)
    except Exception as e:
        logger.error(f"Error fetching assessments: {str(e)}")
        return _response(500, {"error": str(e)})

    return _response(200, [record.model_dump(mode="json", by_alias=True) for record in records])
