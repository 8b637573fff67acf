"""Save/load of portfolio configs, backtest results and ledger transactions.

The engine treats storage as opaque: anything with these methods works.
"""
import json
import logging
import os
import tempfile
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import asdict, replace
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Tuple

from ..config import PortfolioConfig, portfolio_config_from_dict, portfolio_config_to_dict
from ..errors import ConcurrencyConflictError, PortfolioNotFoundError
from ..models import BacktestResult, Transaction, transaction_from_dict, transaction_to_dict

logger = logging.getLogger(__name__)


def result_to_dict(result: BacktestResult) -> dict:
    out = result.summary()
    out["asset_performance"] = [asdict(a) for a in result.asset_performance]
    out["evolution"] = [
        {
            "date": s.date.strftime("%Y-%m-%d"),
            "total_value": s.total_value,
            "cash_balance": s.cash_balance,
            "monthly_return": s.monthly_return,
            "contribution": s.contribution,
            "withdrawn": s.withdrawn,
            "dividends": s.dividends,
            "rebalanced": s.rebalanced,
            "holdings": dict(s.holdings),
            "prices": dict(s.prices),
        }
        for s in result.snapshots
    ]
    out["transactions"] = [transaction_to_dict(tx) for tx in result.transactions]
    return out


class Store(Protocol):
    def save_run(self, config: PortfolioConfig, result: BacktestResult) -> Tuple[str, str]: ...
    def save_config(self, config: PortfolioConfig) -> str: ...
    def load_config(self, portfolio_id: str) -> PortfolioConfig: ...
    def load_results(self, portfolio_id: str) -> List[dict]: ...
    def load_transactions(self, portfolio_id: str) -> List[Transaction]: ...
    def load_ledger(self, portfolio_id: str) -> Tuple[List[Transaction], int]: ...
    def save_transactions(self, portfolio_id: str, transactions: List[Transaction],
                          expected_version: Optional[int] = None) -> int: ...


def _ensure_id(config: PortfolioConfig) -> PortfolioConfig:
    if config.portfolio_id:
        return config
    return replace(config, portfolio_id=uuid.uuid4().hex)


class InMemoryStore:
    def __init__(self):
        self._lock = threading.Lock()
        self.configs: Dict[str, PortfolioConfig] = {}
        self.results: Dict[str, List[dict]] = {}
        self.transactions: Dict[str, List[dict]] = {}
        self.ledger_versions: Dict[str, int] = {}

    def save_config(self, config):
        config = _ensure_id(config)
        with self._lock:
            self.configs[config.portfolio_id] = config
        return config.portfolio_id

    def save_run(self, config, result):
        config = _ensure_id(config)
        payload = result_to_dict(result)
        run_id = uuid.uuid4().hex
        payload["run_id"] = run_id
        with self._lock:
            self.configs[config.portfolio_id] = config
            self.results.setdefault(config.portfolio_id, []).append(payload)
        return config.portfolio_id, run_id

    def load_config(self, portfolio_id):
        with self._lock:
            try:
                return self.configs[portfolio_id]
            except KeyError:
                raise PortfolioNotFoundError(portfolio_id) from None

    def load_results(self, portfolio_id):
        with self._lock:
            return list(self.results.get(portfolio_id, []))

    def load_transactions(self, portfolio_id):
        return self.load_ledger(portfolio_id)[0]

    def load_ledger(self, portfolio_id):
        with self._lock:
            rows = list(self.transactions.get(portfolio_id, []))
            version = self.ledger_versions.get(portfolio_id, 0)
        return [transaction_from_dict(r) for r in rows], version

    def save_transactions(self, portfolio_id, transactions, expected_version=None):
        rows = [transaction_to_dict(tx) for tx in transactions]
        with self._lock:
            version = self.ledger_versions.get(portfolio_id, 0)
            _check_ledger_version(portfolio_id, version, expected_version)
            self.transactions[portfolio_id] = rows
            self.ledger_versions[portfolio_id] = version + 1
        return version + 1


def _check_ledger_version(portfolio_id, version, expected_version):
    if expected_version is not None and expected_version != version:
        raise ConcurrencyConflictError(
            f"ledger {portfolio_id} was saved at version {version}, writer expected {expected_version}"
        )


def _read_ledger(path: Path):
    if not path.exists():
        return [], 0
    with open(path, encoding="utf-8") as fh:
        payload = json.load(fh)
    if isinstance(payload, list):  # pre-versioned layout
        return payload, 0
    return payload["transactions"], int(payload["version"])


@contextmanager
def _file_lock(path: Path, timeout: float = 10.0):
    """Exclusive lock file so separate processes serialize ledger writes."""
    path.parent.mkdir(parents=True, exist_ok=True)
    deadline = time.monotonic() + timeout
    while True:
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            break
        except FileExistsError:
            if time.monotonic() >= deadline:
                raise ConcurrencyConflictError(f"timed out waiting for {path}") from None
            time.sleep(0.01)
    try:
        yield
    finally:
        os.close(fd)
        os.unlink(path)


def _atomic_write_json(path: Path, payload):
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(payload, fh, indent=2, default=str)
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


class JsonFileStore:
    """One directory per portfolio: config.json, ledger.json, results/<run_id>.json."""

    def __init__(self, root="portfolios"):
        self.root = Path(root)
        self._lock = threading.Lock()

    def _dir(self, portfolio_id: str) -> Path:
        return self.root / portfolio_id

    def save_config(self, config):
        config = _ensure_id(config)
        with self._lock:
            _atomic_write_json(self._dir(config.portfolio_id) / "config.json", portfolio_config_to_dict(config))
        return config.portfolio_id

    def save_run(self, config, result):
        config = _ensure_id(config)
        payload = result_to_dict(result)
        run_id = uuid.uuid4().hex
        payload["run_id"] = run_id
        d = self._dir(config.portfolio_id)
        with self._lock:
            _atomic_write_json(d / "results" / f"{run_id}.json", payload)
            _atomic_write_json(d / "config.json", portfolio_config_to_dict(config))
        logger.info("saved run %s for portfolio %s", run_id, config.portfolio_id)
        return config.portfolio_id, run_id

    def load_config(self, portfolio_id):
        path = self._dir(portfolio_id) / "config.json"
        if not path.exists():
            raise PortfolioNotFoundError(portfolio_id)
        with open(path, encoding="utf-8") as fh:
            return portfolio_config_from_dict(json.load(fh))

    def load_results(self, portfolio_id):
        d = self._dir(portfolio_id) / "results"
        if not d.exists():
            return []
        out = []
        for p in sorted(d.glob("*.json")):
            with open(p, encoding="utf-8") as fh:
                out.append(json.load(fh))
        return out

    def load_transactions(self, portfolio_id):
        return self.load_ledger(portfolio_id)[0]

    def load_ledger(self, portfolio_id):
        """Transactions plus the version a later save must name to succeed."""
        path = self._dir(portfolio_id) / "ledger.json"
        with self._lock:
            rows, version = _read_ledger(path)
        return [transaction_from_dict(r) for r in rows], version

    def save_transactions(self, portfolio_id, transactions, expected_version=None):
        path = self._dir(portfolio_id) / "ledger.json"
        rows = [transaction_to_dict(tx) for tx in transactions]
        with self._lock, _file_lock(path.with_suffix(".lock")):
            _, version = _read_ledger(path)
            _check_ledger_version(portfolio_id, version, expected_version)
            _atomic_write_json(path, {"version": version + 1, "transactions": rows})
        return version + 1
