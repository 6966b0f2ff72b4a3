"""
Payment split computation.

A split plan divides one charge among payee accounts at the provider level.
The plan is validated before any provider call so an invalid configuration
can never produce a charge that cannot be reconciled.
"""
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Optional, Sequence

from pydantic import BaseModel

from storefront.config import settings
from storefront.core.exceptions import SplitConfigInvalid
from storefront.core.money import ZERO, percentage_of, to_money


@dataclass
class SplitRule:
    """A configured payee: percentage plus one account per provider."""
    percentage: Decimal
    accounts: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> "SplitRule":
        try:
            percentage = Decimal(str(data.get("percentage", "0")))
        except InvalidOperation:
            raise SplitConfigInvalid(f"Invalid split percentage: {data.get('percentage')!r}")
        return cls(percentage=percentage, accounts=dict(data.get("accounts") or {}))


class SplitShare(BaseModel):
    """Computed share for one payee."""
    account_id: str
    percentage: Decimal
    amount: Decimal  # BRL, rounded to cents

    def to_dict(self) -> dict:
        return {
            "account_id": self.account_id,
            "percentage": str(self.percentage),
            "amount": str(self.amount),
        }


class SplitCalculator:
    """
    Computes split plans.

    The platform payee is passed in explicitly and added in front of the
    store's rules; it counts toward the rule limit and percentage ceiling.
    """

    def __init__(
        self,
        platform_account_id: Optional[str] = None,
        platform_percentage: Decimal = ZERO,
        max_total_percentage: Decimal = Decimal("50"),
        max_rules: int = 6,
    ):
        self.platform_account_id = platform_account_id
        self.platform_percentage = Decimal(platform_percentage)
        self.max_total_percentage = Decimal(max_total_percentage)
        self.max_rules = max_rules

    @classmethod
    def from_settings(cls) -> "SplitCalculator":
        return cls(
            platform_account_id=settings.SPLIT_PLATFORM_ACCOUNT_ID,
            platform_percentage=settings.SPLIT_PLATFORM_PERCENTAGE,
            max_total_percentage=settings.SPLIT_MAX_TOTAL_PERCENTAGE,
            max_rules=settings.SPLIT_MAX_RULES,
        )

    def _with_platform(self, rules: Sequence[SplitRule], provider: str) -> List[SplitRule]:
        # A 0% rule pays nobody, with or without an account
        rules = [r for r in rules if r.percentage != 0]
        if self.platform_account_id and self.platform_percentage > 0:
            platform = SplitRule(
                percentage=self.platform_percentage,
                accounts={provider: self.platform_account_id},
            )
            return [platform, *rules]
        return list(rules)

    def calculate(
        self,
        amount: Decimal,
        rules: Sequence[SplitRule],
        provider: str,
    ) -> List[SplitShare]:
        """Validate the rules and return the per-payee shares for `amount`."""
        amount = to_money(amount)
        rules = self._with_platform(rules, provider)

        if len(rules) > self.max_rules:
            raise SplitConfigInvalid(
                f"At most {self.max_rules} split rules are allowed, got {len(rules)}"
            )

        shares: List[SplitShare] = []
        total_percentage = ZERO
        for position, rule in enumerate(rules, start=1):
            if rule.percentage <= 0 or rule.percentage > 100:
                raise SplitConfigInvalid(
                    f"Split rule {position} has invalid percentage {rule.percentage}"
                )
            account = (rule.accounts.get(provider) or "").strip()
            if not account:
                raise SplitConfigInvalid(
                    f"Split rule {position} has no {provider} account"
                )
            total_percentage += rule.percentage
            shares.append(
                SplitShare(
                    account_id=account,
                    percentage=rule.percentage,
                    amount=percentage_of(amount, rule.percentage),
                )
            )

        if total_percentage > self.max_total_percentage:
            raise SplitConfigInvalid(
                f"Total split percentage {total_percentage}% exceeds "
                f"{self.max_total_percentage}%"
            )

        total_split = sum((s.amount for s in shares), ZERO)
        if total_split > amount:
            raise SplitConfigInvalid(
                f"Split amounts {total_split} exceed the charge amount {amount}"
            )

        return shares

    def calculate_for_config(self, amount: Decimal, split_config, provider: str) -> List[SplitShare]:
        """Shares for a SplitConfig row (None or inactive means platform only)."""
        rules: List[SplitRule] = []
        if split_config is not None and split_config.is_active:
            rules = [SplitRule.from_dict(r) for r in (split_config.rules or [])]
        return self.calculate(amount, rules, provider)
