"""Automation dispatch and the external automation engine adapters."""

from threadline.automation.dispatcher import (
    AutomationDispatcher,
    DispatchResult,
    match_keyword,
    normalize_trigger_text,
)
from threadline.automation.engine import (
    AutomationEngine,
    DisabledAutomationEngine,
    EngineResult,
    HttpAutomationEngine,
    get_automation_engine,
)

__all__ = [
    "AutomationDispatcher",
    "AutomationEngine",
    "DisabledAutomationEngine",
    "DispatchResult",
    "EngineResult",
    "HttpAutomationEngine",
    "get_automation_engine",
    "match_keyword",
    "normalize_trigger_text",
]
