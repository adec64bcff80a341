"""Demo data loaded into an empty store at startup."""
from __future__ import annotations

import logging

from portal.schemas import MetricsPatch, MilestoneCreate, StakeholderCreate
from portal.storage import Storage

log = logging.getLogger(__name__)

DEMO_METRICS = MetricsPatch(
    mrr=24500, runway=18, burn_rate=28000, active_users=2450, cac=125, ltv=1250,
    churn=2.3, team_size=12, open_positions=3, cash_balance=504000, last_fundraise="Pre-Seed",
)

DEMO_STAKEHOLDERS = [
    StakeholderCreate(name="John Doe", title="Founder & CEO", type="Founder", shares=6_000_000,
                      percentage=70.6, security_type="Common Stock", initials="JD"),
    StakeholderCreate(name="Jane Smith", title="Co-Founder & CTO", type="Founder", shares=1_500_000,
                      percentage=17.6, security_type="Common Stock", initials="JS"),
    StakeholderCreate(name="Acme Ventures", title="Lead Investor", type="Investor", shares=800_000,
                      percentage=9.4, security_type="SAFE", initials="AC"),
    StakeholderCreate(name="Employee Pool", title="Reserved Options", type="Options", shares=1_200_000,
                      percentage=14.1, security_type="Stock Options", initials="EP"),
]

DEMO_MILESTONES = [
    MilestoneCreate(
        title="Pre-Seed Round Completed",
        description=("Successfully raised $500K pre-seed round led by Acme Ventures. "
                     "Funds will be used for product development and team expansion."),
        date="March 2024", status="Completed", amount=500_000, investors=3, icon="fas fa-rocket",
    ),
    MilestoneCreate(
        title="Series A Preparation",
        description=("Preparing for Series A round with target of $3M to accelerate growth "
                     "and expand into new markets."),
        date="Q4 2024 (Planned)", status="In Progress", amount=3_000_000, icon="fas fa-chart-line",
    ),
    MilestoneCreate(
        title="Company Formation",
        description="Incorporated Cynco Inc. in Delaware and established initial equity structure.",
        date="January 2024", status="Completed", icon="fas fa-building",
    ),
]


def seed_demo_data(storage: Storage) -> bool:
    """Load demo metrics, cap table and timeline. Returns False if the store already has data."""
    if storage.get_metrics() is not None or storage.list_stakeholders() or storage.list_milestones():
        return False
    storage.update_metrics(DEMO_METRICS)
    for stakeholder in DEMO_STAKEHOLDERS:
        storage.create_stakeholder(stakeholder)
    for milestone in DEMO_MILESTONES:
        storage.create_milestone(milestone)
    log.info("Seeded demo data: %d stakeholders, %d milestones",
             len(DEMO_STAKEHOLDERS), len(DEMO_MILESTONES))
    return True
