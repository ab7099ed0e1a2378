# commission_system/config/rules.py
"""
Commission rule sets.

A RuleSet is the immutable snapshot of the compensation plan in force at
an instant: percent and unlock threshold per (structure, level), plus the
monetary settings it was evaluated with. Every resolver and distributor
call receives one explicitly, so historical recomputation uses the rules
effective at the payment time.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional

from sqlalchemy.orm import Session

from config import Config
from models.commission_rule import CommissionRule, Structure, MAX_DEPTH
from commission_system.errors import CommissionConfigError

logger = logging.getLogger(__name__)

# Earliest effectiveFrom of the seeded default plan
DEFAULT_EFFECTIVE_FROM = datetime(2000, 1, 1)

# Default plan: (percent, direct referrals required)
DEFAULT_RULES = {
    Structure.A: {
        1: (Decimal("0.10"), 0),
        2: (Decimal("0.10"), 3),
        3: (Decimal("0.10"), 5),
        4: (Decimal("0.10"), 8),
        5: (Decimal("0.10"), 10),
    },
    Structure.B: {
        1: (Decimal("0.10"), 0),
        2: (Decimal("0.07"), 0),
        3: (Decimal("0.05"), 0),
        4: (Decimal("0.04"), 0),
        5: (Decimal("0.03"), 0),
        6: (Decimal("0.03"), 0),
        7: (Decimal("0.02"), 0),
        8: (Decimal("0.02"), 0),
        9: (Decimal("0.01"), 0),
        10: (Decimal("0.01"), 0),
    },
}


@dataclass(frozen=True)
class LevelRule:
    percent: Decimal
    unlockReferrals: int


@dataclass(frozen=True)
class RuleSet:
    """Versioned snapshot of the plan."""
    planId: str
    version: str
    levels: Dict[Structure, Dict[int, LevelRule]]
    holdPeriodDays: int = 7
    usdKztRate: Decimal = Decimal("450")
    activationMinUsd: Decimal = Decimal("40")
    sponsorActivationStructures: tuple = ("A", "B")
    oneTimePerPartnerStructures: tuple = ()
    effectiveAt: Optional[datetime] = field(default=None, compare=False)

    def maxDepth(self, structure) -> int:
        return MAX_DEPTH[Structure(structure)]

    def rule(self, structure, level: int) -> LevelRule:
        """
        Rule for a level.

        Raises:
            CommissionConfigError: level has no valid rule
        """
        structure = Structure(structure)
        levelRule = self.levels.get(structure, {}).get(level)
        if levelRule is None:
            raise CommissionConfigError(
                f"No commission rule for structure {structure.value} level {level} "
                f"(plan {self.planId}, version {self.version})"
            )
        return levelRule

    def validate(self, structure):
        """
        Check that every level 1..maxDepth has a sane rule.

        Raises:
            CommissionConfigError: missing level, percent outside (0, 1]
                or negative threshold
        """
        structure = Structure(structure)
        for level in range(1, self.maxDepth(structure) + 1):
            levelRule = self.rule(structure, level)
            if not (Decimal("0") < levelRule.percent <= Decimal("1")):
                raise CommissionConfigError(
                    f"Invalid percent {levelRule.percent} for {structure.value} level {level}"
                )
            if levelRule.unlockReferrals < 0:
                raise CommissionConfigError(
                    f"Negative unlock threshold for {structure.value} level {level}"
                )

    @property
    def activationThreshold(self) -> Decimal:
        """Monthly activation threshold in base currency."""
        return self.activationMinUsd * self.usdKztRate

    def requiresSponsorActivation(self, structure) -> bool:
        return Structure(structure).value in self.sponsorActivationStructures

    def isOneTimePerPartner(self, structure) -> bool:
        return Structure(structure).value in self.oneTimePerPartnerStructures


def load_rule_set(session: Session, asOf: datetime, planId: Optional[str] = None) -> RuleSet:
    """
    Build the rule set effective at asOf.

    For each (structure, level) the newest active row with
    effectiveFrom <= asOf wins. Missing levels are not an error here;
    RuleSet.validate() reports them when a structure is used.
    """
    planId = planId or Config.get(Config.PLAN_ID) or "default"

    rows = session.query(CommissionRule).filter(
        CommissionRule.planID == planId,
        CommissionRule.isActive == True,
        CommissionRule.effectiveFrom <= asOf
    ).order_by(CommissionRule.effectiveFrom).all()

    levels: Dict[Structure, Dict[int, LevelRule]] = {}
    latest = None
    for row in rows:
        levels.setdefault(Structure(row.structure), {})[row.level] = LevelRule(
            percent=Decimal(row.percent),
            unlockReferrals=int(row.unlockReferrals or 0)
        )
        latest = row.effectiveFrom

    version = f"{planId}@{latest.isoformat() if latest else 'none'}"

    return RuleSet(
        planId=planId,
        version=version,
        levels=levels,
        holdPeriodDays=int(Config.get(Config.HOLD_PERIOD_DAYS, 7)),
        usdKztRate=Decimal(Config.get(Config.USD_KZT_RATE, Decimal("450"))),
        activationMinUsd=Decimal(Config.get(Config.ACTIVATION_MIN_USD, Decimal("40"))),
        sponsorActivationStructures=tuple(
            Config.get(Config.SPONSOR_ACTIVATION_STRUCTURES, ["A", "B"])
        ),
        oneTimePerPartnerStructures=tuple(
            Config.get(Config.ONE_TIME_PER_PARTNER_STRUCTURES, [])
        ),
        effectiveAt=asOf,
    )


def seed_default_rules(
        session: Session,
        planId: Optional[str] = None,
        effectiveFrom: datetime = DEFAULT_EFFECTIVE_FROM
) -> int:
    """
    Insert the default plan if the plan has no rules yet.

    Returns:
        Number of rows inserted
    """
    planId = planId or Config.get(Config.PLAN_ID) or "default"

    exists = session.query(CommissionRule).filter_by(planID=planId).first()
    if exists:
        logger.debug(f"Commission rules for plan {planId} already present")
        return 0

    inserted = 0
    for structure, levels in DEFAULT_RULES.items():
        for level, (percent, unlock) in levels.items():
            session.add(CommissionRule(
                planID=planId,
                structure=structure.value,
                level=level,
                percent=percent,
                unlockReferrals=unlock,
                effectiveFrom=effectiveFrom,
                isActive=True
            ))
            inserted += 1

    session.flush()
    logger.info(f"Seeded {inserted} default commission rules for plan {planId}")
    return inserted
