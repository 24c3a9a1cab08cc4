"""Shared fixtures: a throwaway workspace and a fund config writer."""

import textwrap

import pytest


FUND_TOML = """\
[fund]
name = "{name}"
display_name = "{name} fund"
status = "{status}"

[capital]
initial = {capital}

[objective]
type = "growth"

[risk]
profile = "moderate"
stop_loss_pct = 8

[broker]
provider = "{provider}"
mode = "paper"

[schedule]
trading_days = ["MON", "TUE", "WED", "THU", "FRI"]
"""


@pytest.fixture
def workspace(tmp_path):
    from fundkeeper.shell.paths import Workspace
    ws = Workspace(tmp_path)
    ws.funds_dir.mkdir(parents=True)
    return ws


@pytest.fixture
def write_fund(workspace):
    """write_fund(name, extra_toml="", status="active", provider="manual", capital=10000)"""

    def _write(name, extra="", status="active", provider="manual", capital=10000):
        paths = workspace.fund(name)
        paths.root.mkdir(parents=True, exist_ok=True)
        body = FUND_TOML.format(name=name, status=status, provider=provider, capital=capital)
        paths.config.write_text(body + "\n" + textwrap.dedent(extra))
        return paths

    return _write
