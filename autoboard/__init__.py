"""
Autoboard: automation engine for AI-driven Kanban boards.

Instruction cards fire on schedules, card events and column thresholds,
gated by cooldowns, daily caps and loop prevention.
"""

__version__ = "0.1.0"
__codename__ = "AUTOBOARD"

from autoboard.engine import AutomationEngine  # noqa: E402
from autoboard.event_bus import AutomationEventBus  # noqa: E402
from autoboard.store import BoardStore  # noqa: E402

__all__ = ["AutomationEngine", "AutomationEventBus", "BoardStore", "__version__"]
