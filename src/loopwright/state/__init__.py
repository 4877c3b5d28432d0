from loopwright.state.plan import Checkpoint, Plan, Sign
from loopwright.state.plan_store import PlanStore
from loopwright.state.signs import SignsLedger
from loopwright.state.snapshots import GitSnapshots

__all__ = ["Checkpoint", "GitSnapshots", "Plan", "PlanStore", "Sign", "SignsLedger"]
