"""autopilot: constant proportion portfolio insurance, on autopilot.

Split capital between a safe leg and a risky leg so a position never falls
below its floor, and keep the split honest on every tick.
"""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "1.0.0"
