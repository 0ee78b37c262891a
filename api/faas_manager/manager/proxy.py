import logging
from typing import Any, Optional

import requests

from ..core.errors import ExecutionError

logger = logging.getLogger(__name__)


class ExecutionProxy:
    """
    Forwards one invocation to a worker and unwraps its response.

    The worker receives POST http://<endpoint> with {"payload": "<string>"} and
    answers 200 with {"result": <any JSON>}. Every other outcome is an
    ExecutionError. There are no retries; the timeout is the only bound.
    """

    def __init__(self, session: Optional[requests.Session] = None, timeout: Optional[float] = 30):
        self.session = session or requests.Session()
        self.timeout = timeout

    def invoke(self, endpoint: str, payload: str, timeout: Optional[float] = None) -> Any:
        url = f"http://{endpoint}"
        try:
            response = self.session.post(
                url,
                json={"payload": payload},
                headers={"Content-Type": "application/json"},
                timeout=timeout if timeout is not None else self.timeout,
            )
        except requests.exceptions.Timeout as e:
            raise ExecutionError(f"worker at {endpoint} timed out") from e
        except requests.exceptions.RequestException as e:
            raise ExecutionError(f"execute request to worker at {endpoint}: {e}") from e

        if response.status_code != 200:
            raise ExecutionError("worker returned non-200 status", response.status_code, response.text)

        try:
            body = response.json()
        except ValueError as e:
            raise ExecutionError(f"unmarshal worker response: {e}") from e
        if not isinstance(body, dict) or "result" not in body:
            raise ExecutionError(f"worker response has no 'result' field: {response.text[:200]}")
        return body["result"]
