from typing import Any, Optional

from pydantic import ValidationError

import config
from dynamodb import DynamoDBDirectory, DynamoDBStore
from events import Event
from reconciler import Reconciler

logger = config.get_logger(service="handler")

_reconciler: Optional[Reconciler] = None


def get_reconciler() -> Reconciler:
    global _reconciler  # noqa: PLW0603
    if _reconciler is None:
        cfg = config.get_config()
        _reconciler = Reconciler(cfg, DynamoDBStore.from_config(cfg), DynamoDBDirectory.from_config(cfg))
    return _reconciler


def lambda_handler(event: dict[str, Any], context: object) -> dict[str, Any]:  # noqa: ARG001
    """Parse a host-system change event and run the reconciliation it triggers.

    Args:
        event: Raw event payload with an `event_kind` key.
        context: Lambda context.

    Returns:
        Dictionary with the reconciliation result.
    """
    try:
        parsed_event = Event.model_validate(event).root
    except ValidationError as e:
        logger.warning("Got unexpected event:", extra={"event": event, "exception": e})
        return {
            "statusCode": 400,
            "body": {"error": "Unrecognised event", "success": False},
        }

    success = get_reconciler().dispatch(parsed_event)
    return {
        "statusCode": 200,
        "body": {"event_kind": parsed_event.event_kind, "success": success},
    }
