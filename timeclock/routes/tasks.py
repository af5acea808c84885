import logging

from fastapi import APIRouter, Depends

from ..auth.security import require_admin
from ..models.models import Worker
from ..schemas.time_entries import SweepSummaryResponse
from ..services.auto_clock_out import AutoClockOutSweeper

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tasks", tags=["tasks"])


def get_sweeper() -> AutoClockOutSweeper:
    return AutoClockOutSweeper()


@router.post("/auto-clock-out", response_model=SweepSummaryResponse)
def trigger_auto_clock_out(
    user: Worker = Depends(require_admin),
    sweeper: AutoClockOutSweeper = Depends(get_sweeper),
):
    """Run one auto clock-out sweep now. The sweep covers every active company."""
    logger.info(f"Auto clock-out sweep triggered by {user.id}")
    return sweeper.run().as_dict()
