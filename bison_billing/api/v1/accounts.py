"""/v1/accounts - Team account administration"""

import logging
from datetime import timedelta
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response

from bison_billing.api.dependencies import get_billing_config, get_engine, get_request_id, http_error
from bison_billing.api.v1.schemas import (
    AccountCreateRequest,
    AccountListResponse,
    AccountResponse,
    AutoRechargeResponse,
    AutoRechargeSchema,
    GracePeriodRequest,
    RechargeRequest,
    RechargeResponse,
    ResumeResponse,
    TransactionListResponse,
    TransactionSchema,
)
from bison_billing.domain.exceptions import DomainException, InvalidAmountError
from bison_billing.domain.models import Account, AutoRechargePolicy, BillingConfig, Transaction
from bison_billing.domain.recharge_schedule import next_execution
from bison_billing.engine.accounts import AccountView
from bison_billing.engine.container import Engine
from bison_billing.utils.date_utils import local_date

router = APIRouter()


def _policy_schema(policy: Optional[AutoRechargePolicy]) -> Optional[AutoRechargeSchema]:
    if policy is None:
        return None
    return AutoRechargeSchema(
        enabled=policy.enabled,
        amount=policy.amount,
        schedule=policy.schedule,
        day_of_week=policy.day_of_week,
        day_of_month=policy.day_of_month,
    )


def _account_response(view: AccountView) -> AccountResponse:
    account = view.account
    return AccountResponse(
        entity_id=account.id,
        balance=account.balance,
        state=view.state.value,
        suspended=account.suspended,
        last_billed_at=account.last_billed_at,
        overdue_at=account.overdue_at,
        grace_period_hours=account.grace_period.total_seconds() / 3600 if account.grace_period is not None else None,
        grace_remaining=view.grace_remaining,
        daily_consumption=view.daily_consumption,
        estimated_overdue_at=view.estimated_overdue_at,
        auto_recharge=_policy_schema(account.auto_recharge),
        next_auto_recharge=view.next_auto_recharge,
        version=account.version,
        config_error=account.config_error,
    )


def _transaction_schema(transaction: Transaction) -> TransactionSchema:
    return TransactionSchema(
        id=str(transaction.id),
        timestamp=transaction.timestamp,
        kind=transaction.kind.value,
        amount=transaction.amount,
        resulting_balance=transaction.resulting_balance,
        operator=transaction.operator,
        reason=transaction.reason,
    )


def _auto_recharge_response(account: Account, engine: Engine) -> AutoRechargeResponse:
    policy = account.auto_recharge
    next_date = None
    if policy is not None and policy.enabled:
        next_date = next_execution(policy, local_date(engine.accounts.clock(), engine.accounts.timezone_name))
    return AutoRechargeResponse(
        entity_id=account.id,
        policy=_policy_schema(policy),
        last_executed=policy.last_executed if policy is not None else None,
        next_execution=next_date,
    )


@router.post("/accounts", response_model=AccountResponse, status_code=201)
def create_account(
    request_body: AccountCreateRequest,
    engine: Engine = Depends(get_engine),
    config: BillingConfig = Depends(get_billing_config),
):
    """Provision a team with zero balance; billing starts from now"""
    grace = timedelta(hours=request_body.grace_period_hours) if request_body.grace_period_hours is not None else None
    try:
        account = engine.accounts.provision(request_body.entity_id, grace_period=grace)
        return _account_response(engine.accounts.describe(account, config))
    except DomainException as e:
        raise http_error(e) from e


@router.get("/accounts", response_model=AccountListResponse)
def list_accounts(
    engine: Engine = Depends(get_engine),
    config: BillingConfig = Depends(get_billing_config),
):
    """All teams with derived state, plus the total balance"""
    try:
        accounts = engine.store.list_all()
        views = [engine.accounts.describe(a, config) for a in accounts]
    except DomainException as e:
        raise http_error(e) from e

    return AccountListResponse(
        accounts=[_account_response(v) for v in views],
        total_balance=sum((a.balance for a in accounts), Decimal("0")),
    )


@router.get("/accounts/low-balance", response_model=AccountListResponse)
def list_low_balance_accounts(
    threshold: Optional[Decimal] = Query(None, description="Defaults to the alert balance threshold"),
    engine: Engine = Depends(get_engine),
    config: BillingConfig = Depends(get_billing_config),
):
    """Teams whose balance is below the threshold"""
    try:
        if threshold is None:
            threshold = engine.config_repo.load_alert_config().balance_threshold
        accounts = engine.accounts.low_balance(threshold)
        views = [engine.accounts.describe(a, config) for a in accounts]
    except DomainException as e:
        raise http_error(e) from e

    return AccountListResponse(
        accounts=[_account_response(v) for v in views],
        total_balance=sum((a.balance for a in accounts), Decimal("0")),
    )


@router.get("/accounts/{entity_id}", response_model=AccountResponse)
def get_account(
    entity_id: str,
    engine: Engine = Depends(get_engine),
    config: BillingConfig = Depends(get_billing_config),
):
    """
    Retrieve one team's account.

    Returns:
        Balance, derived state, grace remaining and consumption estimates
    """
    try:
        return _account_response(engine.accounts.view(entity_id, config))
    except DomainException as e:
        raise http_error(e) from e


@router.delete("/accounts/{entity_id}", status_code=204)
def delete_account(entity_id: str, engine: Engine = Depends(get_engine)):
    """Remove a team and its ledger history"""
    try:
        engine.accounts.delete(entity_id)
    except DomainException as e:
        raise http_error(e) from e
    return Response(status_code=204)


@router.post("/accounts/{entity_id}/recharge", response_model=RechargeResponse)
async def recharge_account(
    entity_id: str,
    request_body: RechargeRequest,
    request: Request,
    engine: Engine = Depends(get_engine),
    config: BillingConfig = Depends(get_billing_config),
):
    """
    Credit a team.

    A suspended team whose balance becomes non-negative is resumed
    immediately rather than at the next billing cycle.
    """
    request_id = get_request_id(request)
    try:
        result = await engine.accounts.recharge(
            entity_id,
            request_body.amount,
            config,
            operator=request_body.operator,
            reason=request_body.reason,
        )
    except DomainException as e:
        logging.warning(f"Recharge failed: {e}", extra={"request_id": request_id, "entity_id": entity_id})
        raise http_error(e) from e

    return RechargeResponse(
        entity_id=entity_id,
        balance=result.account.balance,
        state=result.suspension.state.value,
        action=result.suspension.action,
        transaction=_transaction_schema(result.transaction),
    )


@router.get("/accounts/{entity_id}/transactions", response_model=TransactionListResponse)
def list_transactions(
    entity_id: str,
    limit: int = Query(50, ge=1, le=1000),
    engine: Engine = Depends(get_engine),
):
    """Ledger entries for a team, newest first"""
    try:
        engine.store.get_account(entity_id)
        transactions = engine.store.list_transactions(entity_id, limit=limit)
    except DomainException as e:
        raise http_error(e) from e

    return TransactionListResponse(
        entity_id=entity_id,
        transactions=[_transaction_schema(t) for t in transactions],
    )


@router.get("/accounts/{entity_id}/auto-recharge", response_model=AutoRechargeResponse)
def get_auto_recharge(entity_id: str, engine: Engine = Depends(get_engine)):
    try:
        account = engine.store.get_account(entity_id)
    except DomainException as e:
        raise http_error(e) from e
    return _auto_recharge_response(account, engine)


@router.put("/accounts/{entity_id}/auto-recharge", response_model=AutoRechargeResponse)
def put_auto_recharge(
    entity_id: str,
    request_body: Optional[AutoRechargeSchema] = None,
    engine: Engine = Depends(get_engine),
):
    """Replace the auto-recharge policy; an empty body clears it"""
    policy = None
    if request_body is not None:
        if request_body.enabled and request_body.amount <= 0:
            raise http_error(InvalidAmountError("Auto-recharge amount must be positive"))
        policy = AutoRechargePolicy(
            enabled=request_body.enabled,
            amount=request_body.amount,
            schedule=request_body.schedule,
            day_of_week=request_body.day_of_week,
            day_of_month=request_body.day_of_month,
        )

    try:
        account = engine.accounts.set_auto_recharge(entity_id, policy)
    except DomainException as e:
        raise http_error(e) from e
    return _auto_recharge_response(account, engine)


@router.put("/accounts/{entity_id}/grace-period", response_model=AccountResponse)
def put_grace_period(
    entity_id: str,
    request_body: GracePeriodRequest,
    engine: Engine = Depends(get_engine),
    config: BillingConfig = Depends(get_billing_config),
):
    """Set or clear the per-team grace period override"""
    hours = request_body.grace_period_hours
    try:
        account = engine.accounts.set_grace_period(entity_id, timedelta(hours=hours) if hours is not None else None)
        return _account_response(engine.accounts.describe(account, config))
    except DomainException as e:
        raise http_error(e) from e


@router.post("/accounts/{entity_id}/resume", response_model=ResumeResponse)
async def resume_account(
    entity_id: str,
    engine: Engine = Depends(get_engine),
    config: BillingConfig = Depends(get_billing_config),
):
    """Resume a suspended team; refused while its balance is negative"""
    try:
        result = await engine.suspension.resume(entity_id, config)
    except DomainException as e:
        raise http_error(e) from e

    if result.error:
        raise HTTPException(status_code=502, detail=result.error)

    return ResumeResponse(entity_id=entity_id, state=result.state.value, action=result.action, error=result.error)
