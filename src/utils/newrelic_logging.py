"""New Relic logging integration helpers."""

from collections.abc import MutableMapping
from typing import Any

import newrelic.agent

# Log keys copied onto the New Relic error as custom attributes
ERROR_ATTRIBUTE_KEYS = ("tenant_id", "provider", "source", "event_id", "error_code")


def newrelic_error_processor(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """Processor that sends error-level logs to New Relic.

    Passes every log level through unchanged. For error and critical logs it calls notice_error,
    attaching tenant/provider/source/event identifiers bound in the log context.
    """
    if method_name in ("error", "critical"):
        attributes = {
            key: str(event_dict[key]) for key in ERROR_ATTRIBUTE_KEYS if key in event_dict
        }
        newrelic.agent.notice_error(attributes=attributes or None)

    return event_dict
