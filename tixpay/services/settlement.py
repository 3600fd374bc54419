# tixpay/services/settlement.py
import logging
from dataclasses import dataclass
from typing import Optional

from tixpay.errors import ConfigurationError, GatewayError
from tixpay.models import Organizer
from tixpay.repository import Repository
from tixpay.services.gateway import GatewayClient

logger = logging.getLogger(__name__)


@dataclass
class SettlementDetails:
    subaccount_code: str
    split_code: Optional[str]
    percentage_charge: float
    is_mock: bool


def _bank_field(details: dict, *names: str) -> Optional[str]:
    for name in names:
        value = details.get(name)
        if value:
            return str(value)
    return None


def ensure_organizer_settlement(
    repo: Repository,
    gateway: GatewayClient,
    organizer: Organizer,
    default_percentage: float,
) -> SettlementDetails:
    """
    Create-or-reuse the organizer's gateway subaccount (and split, when enabled).
    Stored codes are reused, so repeated checkouts never provision twice.
    """
    percentage = organizer.percentage_charge if organizer.percentage_charge is not None else default_percentage

    subaccount = organizer.subaccount_code
    if not subaccount:
        bank = organizer.bank_details or {}
        settlement_bank = _bank_field(bank, "bank_code", "bankCode", "settlement_bank")
        account_number = _bank_field(bank, "account_number", "accountNumber")

        if not settlement_bank or not account_number:
            if not gateway.mock_mode:
                raise ConfigurationError(
                    "Organizer bank details are incomplete. Provide settlement bank code and account number.",
                    context={"organizer_id": str(organizer.id)},
                )
            subaccount = gateway.create_subaccount(organizer.name, "", "", percentage)
            logger.warning("organizer %s has no bank details; using mock subaccount %s", organizer.id, subaccount)
        else:
            subaccount = gateway.create_subaccount(
                business_name=organizer.name,
                settlement_bank=settlement_bank,
                account_number=account_number,
                percentage_charge=percentage,
                email=organizer.email,
            )
            logger.info("provisioned subaccount %s for organizer %s", subaccount, organizer.id)
        repo.update_organizer_settlement(organizer.id, subaccount_code=subaccount, percentage_charge=percentage)
    elif organizer.percentage_charge is None:
        repo.update_organizer_settlement(organizer.id, percentage_charge=percentage)

    split = organizer.split_code
    if not split and gateway.enable_splits:
        try:
            split = gateway.create_split(
                name=f"TixPay :: {organizer.name}",
                subaccount_code=subaccount,
                share_percent=100 - percentage,
            )
            repo.update_organizer_settlement(organizer.id, split_code=split)
        except GatewayError as e:
            logger.warning("split creation skipped for organizer %s: %s", organizer.id, e.message)
            split = None

    return SettlementDetails(
        subaccount_code=subaccount,
        split_code=split,
        percentage_charge=percentage,
        is_mock=gateway.mock_mode,
    )


def clear_split(repo: Repository, organizer: Organizer) -> None:
    repo.update_organizer_settlement(organizer.id, split_code=None)
    organizer.split_code = None
