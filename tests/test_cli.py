import pytest

from portfolio_backtester.cli import build_parser


def test_run_arguments():
    args = build_parser().parse_args(["run", "p.json", "--strict", "--risk-free", "0.03", "--json"])
    assert args.config == "p.json"
    assert args.strict and args.json
    assert args.risk_free == pytest.approx(0.03)
    assert args.min_months == 12


def test_ledger_arguments():
    args = build_parser().parse_args(["ledger", "confirm", "p1", "a", "b", "--store", "/tmp/x"])
    assert args.action == "confirm"
    assert args.ids == ["a", "b"]
    assert args.store == "/tmp/x"


def test_unknown_ledger_action():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["ledger", "delete", "p1"])
