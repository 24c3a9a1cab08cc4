"""Config loading, fund configs, portfolio invariants and the JSON state store."""

import json

import pytest


# --- Global config ---

def test_config_loading():
    from fundkeeper.shell.config import load_config
    config = load_config()
    assert config.broker.mode == "paper"
    assert config.timezone == "America/New_York"
    assert config.daemon.stoploss_interval_minutes == 5
    assert config.reports.weekly_day == "FRI"
    assert config.subtasks.timeout_minutes == 8
    assert config.subtasks.synthesis_context_chars == 8000


def test_config_env_overrides(tmp_path, monkeypatch):
    from fundkeeper.shell.config import load_config
    monkeypatch.setenv("FUNDKEEPER_HOME", str(tmp_path))
    monkeypatch.setenv("ALPACA_API_KEY", "key-123")
    config = load_config()
    assert config.workspace_path == tmp_path
    assert config.broker.api_key == "key-123"


def test_config_validation_collects_all_errors(tmp_path):
    from fundkeeper.shell.config import load_config
    settings = tmp_path / "settings.toml"
    settings.write_text(
        '[general]\ntimezone = "Mars/Olympus"\n'
        '[broker]\nmode = "yolo"\n'
        '[daemon]\nmarket_open = "16:00"\nmarket_close = "09:30"\nstoploss_interval_minutes = 0\n'
        '[reports]\nweekly_day = "FRIDAY"\n'
    )
    with pytest.raises(ValueError) as exc:
        load_config(settings)
    msg = str(exc.value)
    assert "broker.mode" in msg
    assert "market_open" in msg
    assert "stoploss_interval_minutes" in msg
    assert "weekly_day" in msg
    assert "Invalid timezone" in msg


# --- Fund configs ---

def test_fund_config_parses_sessions_and_triggers(workspace, write_fund):
    from fundkeeper.engine.triggers import TriggerKind
    from fundkeeper.shell.contract import FundStatus
    from fundkeeper.shell.funds import load_fund_config
    write_fund("alpha", """
        [schedule.sessions.pre_market]
        time = "09:00"
        focus = "Overnight news"
        parallel = true

        [schedule.sessions.post_market]
        time = "16:30"
        focus = "Review the day"
        enabled = false

        [[schedule.special_sessions]]
        trigger = "FOMC meeting days"
        time = "14:00"
        focus = "Reduce directional risk"
    """)
    fund = load_fund_config(workspace, "alpha")
    assert fund.status == FundStatus.ACTIVE
    assert fund.initial_capital == 10000
    assert fund.sessions["pre_market"].parallel is True
    assert fund.sessions["post_market"].enabled is False
    assert fund.special_sessions[0].rule.kind == TriggerKind.KEYWORD
    assert fund.trades_on("MON") and not fund.trades_on("SAT")


def test_fund_config_rejects_bad_values(workspace, write_fund):
    from fundkeeper.shell.funds import FundConfigError, load_fund_config
    write_fund("beta", """
        [schedule.sessions.open]
        time = "9am"
        focus = "x"

        [[schedule.special_sessions]]
        trigger = "every Monday"
        time = "10:00"
        focus = "a"

        [[schedule.special_sessions]]
        trigger = "Every  monday"
        time = "11:00"
        focus = "b"
    """, status="sleeping")
    with pytest.raises(FundConfigError) as exc:
        load_fund_config(workspace, "beta")
    msg = str(exc.value)
    assert "fund.status" in msg
    assert "must be HH:MM" in msg
    assert "duplicates another trigger" in msg


def test_fund_config_missing_file(workspace):
    from fundkeeper.shell.funds import FundConfigError, load_fund_config
    with pytest.raises(FundConfigError):
        load_fund_config(workspace, "ghost")


def test_list_fund_names(workspace, write_fund):
    from fundkeeper.shell.funds import list_fund_names
    write_fund("zeta")
    write_fund("alpha")
    (workspace.funds_dir / "not_a_fund").mkdir()
    assert list_fund_names(workspace) == ["alpha", "zeta"]


# --- Portfolio invariants ---

def test_portfolio_recompute_restores_invariants():
    from fundkeeper.shell.contract import Portfolio, Position
    p = Portfolio(last_updated="", cash=500.0, total_value=0.0, positions=[
        Position(symbol="MSFT", shares=2, avg_cost=100, current_price=150, market_value=300),
        Position(symbol="AAPL", shares=1, avg_cost=200, current_price=200, market_value=200),
    ])
    p.recompute()
    assert p.total_value == 1000.0
    assert [x.symbol for x in p.positions] == ["AAPL", "MSFT"]
    assert p.get("MSFT").weight_pct == pytest.approx(30.0)
    assert p.get("AAPL").weight_pct == pytest.approx(20.0)


def test_portfolio_rejects_duplicate_symbols():
    from fundkeeper.shell.contract import Portfolio
    pos = {"symbol": "AAPL", "shares": 1, "avg_cost": 1, "current_price": 1, "market_value": 1}
    with pytest.raises(ValueError):
        Portfolio.from_dict({"last_updated": "", "cash": 0, "total_value": 2, "positions": [pos, pos]})


def test_trade_record_validates_quantity():
    from fundkeeper.shell.contract import TradeRecord, TradeSide
    with pytest.raises(ValueError):
        TradeRecord(timestamp="t", fund="f", symbol="AAPL", side=TradeSide.BUY,
                    quantity=0, price=10, total_value=0)


# --- State store ---

@pytest.mark.asyncio
async def test_init_fund_state_creates_layout(workspace):
    from fundkeeper.shell.contract import TrackerStatus
    from fundkeeper.shell.state import init_fund_state
    paths = workspace.fund("alpha")
    store = await init_fund_state(paths, 25000, "growth")

    for d in ("state", "analysis", "scripts", "reports/daily", "reports/weekly", "reports/monthly"):
        assert (paths.root / d).is_dir(), d

    portfolio = await store.read_portfolio()
    assert portfolio.cash == 25000
    assert portfolio.total_value == 25000
    assert portfolio.positions == []

    tracker = await store.read_tracker()
    assert tracker.status == TrackerStatus.ON_TRACK
    assert tracker.current_value == 25000
    assert await store.read_session_log() is None


@pytest.mark.asyncio
async def test_total_value_invariant_after_write(workspace):
    """Whatever total the caller passes, the stored one is cash + market values."""
    from fundkeeper.shell.contract import Portfolio, Position
    from fundkeeper.shell.state import StateStore
    store = StateStore(workspace.fund("alpha"))
    await store.write_portfolio(Portfolio(
        last_updated="", cash=1000.0, total_value=123.0,
        positions=[Position(symbol="AAPL", shares=10, avg_cost=90, current_price=100, market_value=1000)],
    ))
    read = await store.read_portfolio()
    assert read.total_value == read.cash + sum(p.market_value for p in read.positions) == 2000.0

    raw = json.loads(workspace.fund("alpha").portfolio.read_text())
    assert raw["total_value"] == 2000.0
    assert "stop_loss" not in raw["positions"][0]


@pytest.mark.asyncio
async def test_atomic_write_leaves_no_temp_files(workspace):
    from fundkeeper.shell.contract import Portfolio
    from fundkeeper.shell.state import StateStore
    store = StateStore(workspace.fund("alpha"))
    for cash in (1.0, 2.0, 3.0):
        await store.write_portfolio(Portfolio.empty(cash))
    state_dir = workspace.fund("alpha").state_dir
    assert [p.name for p in state_dir.iterdir()] == ["portfolio.json"]
    assert (await store.read_portfolio()).cash == 3.0


@pytest.mark.asyncio
async def test_session_log_roundtrip(workspace):
    from fundkeeper.shell.contract import SessionLog
    from fundkeeper.shell.state import StateStore
    store = StateStore(workspace.fund("alpha"))
    await store.write_session_log(SessionLog(
        fund="alpha", session_type="pre_market", started_at="2026-02-20T09:00:00", summary="ok",
    ))
    log = await store.read_session_log()
    assert log.session_type == "pre_market"
    assert log.analysis_file is None


@pytest.mark.asyncio
async def test_state_read_times_out_on_stalled_disk(workspace, monkeypatch):
    import time
    from fundkeeper.shell import state
    store = state.StateStore(workspace.fund("alpha"), io_timeout=0.05)
    monkeypatch.setattr(state, "read_json", lambda path: time.sleep(0.5))
    with pytest.raises(TimeoutError):
        await store.read_portfolio()


def test_config_clock_uses_configured_timezone():
    from datetime import datetime, timedelta
    from zoneinfo import ZoneInfo
    from fundkeeper.shell.config import Config
    now = Config(timezone="Pacific/Kiritimati").now()
    assert now.tzinfo is None
    expected = datetime.now(ZoneInfo("Pacific/Kiritimati")).replace(tzinfo=None)
    assert abs(expected - now) < timedelta(seconds=5)


# --- Log file tee ---

def test_log_tee_opens_file_once(tmp_path, monkeypatch):
    import builtins
    from fundkeeper.utils import logging as logging_mod
    opened = []

    def counting_open(*args, **kwargs):
        opened.append(args[0])
        return builtins.open(*args, **kwargs)

    monkeypatch.setattr(logging_mod, "open", counting_open, raising=False)
    path = tmp_path / "logs" / "daemon.log"
    tee = logging_mod._tee_to_file(path)
    try:
        for i in range(3):
            assert tee(None, "info", f"event {i}") == f"event {i}"
        assert path.read_text().splitlines() == ["event 0", "event 1", "event 2"]
        assert len(opened) == 1
    finally:
        tee.stream.close()
    # A closed stream must not break logging
    assert tee(None, "info", "late") == "late"
