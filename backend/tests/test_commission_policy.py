import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from courierhub import models
from courierhub.config import settings
from courierhub.database import Base, enable_sqlite_savepoints
from courierhub.services import commission_policy
from courierhub.services.errors import InvalidPolicyError, NotFoundError
from courierhub.services.policy_config import load_policy_config


def setup_inmemory_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    enable_sqlite_savepoints(engine)
    Base.metadata.create_all(bind=engine)
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)
    return TestingSessionLocal()


def _team(db, *, leader_id=500, members=(7,), active=True):
    team = models.Team(name="North", leader_id=leader_id, is_active=active)
    db.add(team)
    db.flush()
    for helper_id in members:
        db.add(models.TeamMember(team_id=team.id, helper_id=helper_id, is_active=True))
    db.flush()
    return team


def test_defaults_apply_when_nothing_is_configured():
    db = setup_inmemory_session()
    config = load_policy_config(db)

    rates = commission_policy.get_effective_rate(db, 7, config)

    assert rates.tier == models.PolicyTier.default.value
    assert rates.total_rate == settings.default_commission_rate
    assert rates.platform_rate + rates.team_leader_rate == rates.total_rate


def test_global_policy_beats_defaults():
    db = setup_inmemory_session()
    commission_policy.set_global_policy(db, total_rate=12, platform_rate=9, team_leader_rate=3, actor_id=1)
    db.commit()

    rates = commission_policy.get_effective_rate(db, 7, load_policy_config(db))

    assert (rates.total_rate, rates.platform_rate, rates.team_leader_rate) == (12, 9, 3)
    assert rates.tier == models.PolicyTier.global_policy.value


def test_team_override_beats_global_and_reports_leader():
    db = setup_inmemory_session()
    commission_policy.set_global_policy(db, total_rate=12, platform_rate=9, team_leader_rate=3, actor_id=1)
    team = _team(db, leader_id=500, members=(7,))
    commission_policy.set_team_override(
        db, load_policy_config(db), team_id=team.id, platform_rate=6, team_leader_rate=4, actor_id=1
    )
    db.commit()

    rates = commission_policy.get_effective_rate(db, 7, load_policy_config(db))

    assert (rates.total_rate, rates.platform_rate, rates.team_leader_rate) == (10, 6, 4)
    assert rates.tier == models.PolicyTier.team_override.value
    assert rates.team_leader_id == 500


def test_team_override_uses_configured_default_split():
    db = setup_inmemory_session()
    team = _team(db)
    row = commission_policy.set_team_override(db, load_policy_config(db), team_id=team.id, actor_id=1)

    assert row.platform_rate == settings.default_team_platform_rate
    assert row.team_leader_rate == settings.default_team_leader_share
    assert row.total_rate == row.platform_rate + row.team_leader_rate


def test_inactive_team_is_ignored():
    db = setup_inmemory_session()
    team = _team(db, members=(7,))
    commission_policy.set_team_override(
        db, load_policy_config(db), team_id=team.id, platform_rate=6, team_leader_rate=4, actor_id=1
    )
    team.is_active = False
    db.commit()

    rates = commission_policy.get_effective_rate(db, 7, load_policy_config(db))

    assert rates.tier == models.PolicyTier.default.value


def test_helper_override_beats_team_and_has_no_leader_share():
    db = setup_inmemory_session()
    team = _team(db, members=(7,))
    commission_policy.set_team_override(
        db, load_policy_config(db), team_id=team.id, platform_rate=6, team_leader_rate=4, actor_id=1
    )
    commission_policy.set_helper_override(db, helper_id=7, commission_rate=5, actor_id=1)
    db.commit()

    rates = commission_policy.get_effective_rate(db, 7, load_policy_config(db))

    assert (rates.total_rate, rates.platform_rate, rates.team_leader_rate) == (5, 5, 0)
    assert rates.tier == models.PolicyTier.helper_override.value
    assert rates.team_leader_id is None


def test_removing_overrides_falls_back_a_tier():
    db = setup_inmemory_session()
    team = _team(db, members=(7,))
    config = load_policy_config(db)
    commission_policy.set_team_override(
        db, config, team_id=team.id, platform_rate=6, team_leader_rate=4, actor_id=1
    )
    commission_policy.set_helper_override(db, helper_id=7, commission_rate=5, actor_id=1)

    assert commission_policy.remove_helper_override(db, helper_id=7, actor_id=1) is True
    assert commission_policy.get_effective_rate(db, 7, config).tier == models.PolicyTier.team_override.value

    assert commission_policy.remove_team_override(db, team_id=team.id, actor_id=1) is True
    assert commission_policy.get_effective_rate(db, 7, config).tier == models.PolicyTier.default.value

    assert commission_policy.remove_helper_override(db, helper_id=7, actor_id=1) is False


@pytest.mark.parametrize(
    "total,platform,leader",
    [(10, 8, 3), (10, 11, -1), (101, 100, 1), (10, 8.5, 1.5)],
)
def test_global_policy_shares_must_add_up(total, platform, leader):
    db = setup_inmemory_session()
    with pytest.raises(InvalidPolicyError):
        commission_policy.set_global_policy(
            db, total_rate=total, platform_rate=platform, team_leader_rate=leader, actor_id=1
        )


def test_team_override_for_missing_team_is_not_found():
    db = setup_inmemory_session()
    with pytest.raises(NotFoundError):
        commission_policy.set_team_override(db, load_policy_config(db), team_id=999, actor_id=1)


def test_deposit_rate_is_stored_and_loaded():
    db = setup_inmemory_session()
    assert load_policy_config(db).deposit_rate_percent == settings.default_deposit_rate_percent

    commission_policy.set_deposit_rate(db, percent=20, actor_id=1)
    db.commit()

    config = load_policy_config(db)
    assert config.deposit_rate_percent == 20
    assert str(config.deposit_rate) == "0.2"


@pytest.mark.parametrize("percent", [0, 101, -5])
def test_deposit_rate_out_of_range_is_rejected(percent):
    db = setup_inmemory_session()
    with pytest.raises(InvalidPolicyError):
        commission_policy.set_deposit_rate(db, percent=percent, actor_id=1)


def test_corrupt_stored_deposit_rate_falls_back_to_default():
    db = setup_inmemory_session()
    db.add(models.SystemSetting(key="deposit_rate", value="abc"))
    db.commit()

    assert load_policy_config(db).deposit_rate_percent == settings.default_deposit_rate_percent


def test_policy_writes_are_audited():
    db = setup_inmemory_session()
    commission_policy.set_global_policy(db, total_rate=10, platform_rate=8, team_leader_rate=2, actor_id=42)
    db.commit()

    log = db.query(models.AuditLog).filter(models.AuditLog.action == "commission_policy.global_set").one()
    assert log.actor_id == 42
