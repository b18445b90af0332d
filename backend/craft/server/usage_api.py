from fastapi import APIRouter
from fastapi import Depends
from fastapi import Query

from craft.server.dependencies import get_meter
from craft.server.models import CreditLimitRequest
from craft.usage.metering import MAX_HISTORY_PAGE_SIZE
from craft.usage.metering import UsageMeter
from craft.usage.models import CreditBalance
from craft.usage.models import UsageHistoryPage

router = APIRouter(prefix="/usage")


@router.get("/{user_id}/balance")
async def get_credit_balance(
    user_id: str,
    usage_meter: UsageMeter = Depends(get_meter),
) -> CreditBalance:
    """Credits used and left in the current period, and when they reset."""
    return await usage_meter.get_balance(user_id)


@router.put("/{user_id}/limit")
async def set_credit_limit(
    user_id: str,
    request: CreditLimitRequest,
    usage_meter: UsageMeter = Depends(get_meter),
) -> CreditBalance:
    """Set the user's per-period credit allowance."""
    return await usage_meter.set_credit_limit(user_id, request.credit_limit)


@router.get("/{user_id}/history")
async def get_usage_history(
    user_id: str,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=MAX_HISTORY_PAGE_SIZE),
    usage_meter: UsageMeter = Depends(get_meter),
) -> UsageHistoryPage:
    return await usage_meter.list_usage(user_id, page=page, page_size=page_size)
