"""
Savings goal endpoints
"""

from fastapi import APIRouter, Depends, status

from .auth import WalletSystem, Identity, get_wallet_system, get_current_user
from .schemas import CreateGoalRequest, GoalAmountRequest, AutoChargeRequest


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
def create_goal(
    request: CreateGoalRequest,
    identity: Identity = Depends(get_current_user),
    system: WalletSystem = Depends(get_wallet_system)
):
    """Create a savings goal"""
    goal = system.savings_manager.create_goal(identity.user_id, request.name, request.target_amount)
    return {"status": True, "message": "Savings goal created", "data": goal.to_api_dict()}


@router.get("")
def list_goals(
    identity: Identity = Depends(get_current_user),
    system: WalletSystem = Depends(get_wallet_system)
):
    """List the caller's savings goals"""
    goals = system.savings_manager.list_goals(identity.user_id)
    return {"status": True, "data": [goal.to_api_dict() for goal in goals]}


@router.get("/{goal_id}")
def get_goal(
    goal_id: str,
    identity: Identity = Depends(get_current_user),
    system: WalletSystem = Depends(get_wallet_system)
):
    """Get one savings goal"""
    goal = system.savings_manager.get_goal(identity.user_id, goal_id)
    return {"status": True, "data": goal.to_api_dict()}


@router.post("/{goal_id}/deposit")
def deposit(
    goal_id: str,
    request: GoalAmountRequest,
    identity: Identity = Depends(get_current_user),
    system: WalletSystem = Depends(get_wallet_system)
):
    """Move funds from the main account into the goal"""
    goal, entry = system.savings_manager.deposit(identity.user_id, goal_id, request.amount)
    return {
        "status": True,
        "message": "Deposit successful",
        "data": {"goal": goal.to_api_dict(), "transaction": entry.to_dict()},
    }


@router.post("/{goal_id}/withdraw")
def withdraw(
    goal_id: str,
    request: GoalAmountRequest,
    identity: Identity = Depends(get_current_user),
    system: WalletSystem = Depends(get_wallet_system)
):
    """Move funds from the goal back to the main account"""
    goal, entry = system.savings_manager.withdraw(identity.user_id, goal_id, request.amount)
    return {
        "status": True,
        "message": "Withdrawal successful",
        "data": {"goal": goal.to_api_dict(), "transaction": entry.to_dict()},
    }


@router.post("/{goal_id}/auto-charge")
def enable_auto_charge(
    goal_id: str,
    request: AutoChargeRequest,
    identity: Identity = Depends(get_current_user),
    system: WalletSystem = Depends(get_wallet_system)
):
    """Schedule recurring contributions"""
    goal = system.savings_manager.enable_auto_charge(
        identity.user_id, goal_id, request.amount, request.interval_minutes
    )
    return {"status": True, "message": "Auto-charge enabled", "data": goal.to_api_dict()}


@router.delete("/{goal_id}/auto-charge")
def disable_auto_charge(
    goal_id: str,
    identity: Identity = Depends(get_current_user),
    system: WalletSystem = Depends(get_wallet_system)
):
    """Stop recurring contributions"""
    goal = system.savings_manager.disable_auto_charge(identity.user_id, goal_id)
    return {"status": True, "message": "Auto-charge disabled", "data": goal.to_api_dict()}


@router.patch("/{goal_id}/close")
def close_goal(
    goal_id: str,
    identity: Identity = Depends(get_current_user),
    system: WalletSystem = Depends(get_wallet_system)
):
    """Close the goal and return its balance to the main account"""
    goal, entry = system.savings_manager.close_goal(identity.user_id, goal_id)
    return {
        "status": True,
        "message": "Savings goal closed",
        "data": {"goal": goal.to_api_dict(), "transaction": entry.to_dict() if entry else None},
    }


@router.delete("/{goal_id}")
def delete_goal(
    goal_id: str,
    identity: Identity = Depends(get_current_user),
    system: WalletSystem = Depends(get_wallet_system)
):
    """Delete the goal after returning its balance to the main account"""
    entry = system.savings_manager.delete_goal(identity.user_id, goal_id)
    return {
        "status": True,
        "message": "Savings goal deleted",
        "data": {"transaction": entry.to_dict() if entry else None},
    }
