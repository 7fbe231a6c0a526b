"""/v1/config - Billing and alert configuration"""

import logging
from fastapi import APIRouter, Depends

from bison_billing.api.dependencies import get_engine, http_error
from bison_billing.api.v1.schemas import AlertConfigSchema, BillingConfigSchema
from bison_billing.domain.exceptions import DomainException
from bison_billing.engine.container import Engine
from bison_billing.infrastructure.database.repositories import (
    alert_config_from_dict,
    alert_config_to_dict,
    billing_config_from_dict,
    billing_config_to_dict,
)

router = APIRouter()


@router.get("/config/billing", response_model=BillingConfigSchema)
def get_billing_config(engine: Engine = Depends(get_engine)):
    try:
        config = engine.config_repo.load_billing_config()
    except DomainException as e:
        raise http_error(e) from e
    # Invalid stored prices are reported as missing
    data = billing_config_to_dict(config)
    data["pricing"] = {name: p for name, p in data["pricing"].items() if p["price"] is not None}
    return BillingConfigSchema(**data)


@router.put("/config/billing", response_model=BillingConfigSchema)
def put_billing_config(request_body: BillingConfigSchema, engine: Engine = Depends(get_engine)):
    """Replace the billing configuration; the next cycle picks it up"""
    try:
        config = billing_config_from_dict(request_body.model_dump(mode="json"))
        engine.config_repo.save_billing_config(config)
    except DomainException as e:
        raise http_error(e) from e

    logging.info("Billing configuration updated", extra={"enabled": config.enabled, "resources": sorted(config.pricing)})
    return BillingConfigSchema(**billing_config_to_dict(config))


@router.get("/config/alerts", response_model=AlertConfigSchema)
def get_alert_config(engine: Engine = Depends(get_engine)):
    try:
        config = engine.config_repo.load_alert_config()
    except DomainException as e:
        raise http_error(e) from e
    return AlertConfigSchema(**alert_config_to_dict(config))


@router.put("/config/alerts", response_model=AlertConfigSchema)
def put_alert_config(request_body: AlertConfigSchema, engine: Engine = Depends(get_engine)):
    try:
        config = alert_config_from_dict(request_body.model_dump(mode="json"))
        engine.config_repo.save_alert_config(config)
    except DomainException as e:
        raise http_error(e) from e

    logging.info("Alert configuration updated", extra={"channels": [c.name for c in config.channels]})
    return AlertConfigSchema(**alert_config_to_dict(config))
