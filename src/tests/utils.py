import uuid

from aws_lambda_powertools.utilities.typing import LambdaContext


class LambdaTestContext(LambdaContext):
    def __init__(self, name: str = "autogroup", version: int = 1, region: str = "eu-central-1"):
        self._function_name = name
        self._function_version = str(version)
        self._memory_limit_in_mb = 256
        self._invoked_function_arn = f"arn:aws:lambda:{region}:000000000000:function:{name}:{version}"
        self._aws_request_id = str(uuid.uuid4())
        self._log_group_name = f"/aws/lambda/{name}"
        self._log_stream_name = str(uuid.uuid4())


def trigger(event_kind: str, component: str = "", **fields: int) -> dict:
    """Raw trigger payload as the hosting system delivers it."""
    payload = {"event_kind": event_kind, **fields}
    if component:
        payload["component"] = component
    return payload
