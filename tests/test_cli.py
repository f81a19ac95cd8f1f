"""Tests for the operator CLI and the services the worker command wires in."""

import asyncio
import io

import httpx
import pytest
from rich.console import Console

from tradecue import SqliteRepository, WorkQueue
from tradecue.alpaca import AlpacaGateway
from tradecue.config import AlpacaConfig
from tradecue.models import NewWorkItem, WorkItemStatus, WorkItemType
from tradecue_ops import cli
from tradecue_ops.services import AllowListEnforcement, AlpacaTradability


@pytest.fixture
def output(monkeypatch):
    buffer = io.StringIO()
    monkeypatch.setattr(cli, "console", Console(file=buffer, width=200))
    return buffer


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "tradecue.db")


def seed(db_path, *items, dead_letter=False):
    """Enqueue items into a file database, optionally dead-lettering them."""

    async def _seed():
        async with SqliteRepository(db_path) as repo:
            queue = WorkQueue(repo)
            created = []
            for new in items:
                item = await queue.enqueue(new)
                if dead_letter:
                    item = await queue.mark_dead_letter(item.id, "invalid symbol")
                created.append(item)
            return created

    return asyncio.run(_seed())


def fetch(db_path, item_id):
    async def _fetch():
        async with SqliteRepository(db_path) as repo:
            return await repo.get_work_item(item_id)

    return asyncio.run(_fetch())


def order(symbol="AAPL"):
    return NewWorkItem.create(WorkItemType.SUBMIT_ORDER, {"symbol": symbol, "side": "buy", "qty": "1"})


class TestParser:
    def test_subcommand_required(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args([])

    def test_global_options(self):
        args = cli.build_parser().parse_args(["--db", "x.db", "-v", "list", "--status", "DEAD_LETTER"])
        assert args.db == "x.db"
        assert args.verbose
        assert args.status == "DEAD_LETTER"

    def test_kill_switch_off_excludes_close_positions(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(["kill-switch", "--off", "--close-positions"])

    def test_invalidate_needs_reason(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(["invalidate", "abc"])


class TestAdminCommands:
    """Admin commands run against the database without broker credentials."""

    def test_list(self, db_path, output):
        [item] = seed(db_path, order("MSFT"))
        assert cli.main(["--db", db_path, "list"]) == 0
        text = output.getvalue()
        assert item.id in text
        assert "MSFT" in text

    def test_list_empty(self, db_path, output):
        assert cli.main(["--db", db_path, "list", "--status", "PENDING"]) == 0
        assert "No work items" in output.getvalue()

    def test_show(self, db_path, output):
        [item] = seed(db_path, order())
        assert cli.main(["--db", db_path, "show", item.id]) == 0
        assert "SUBMIT_ORDER" in output.getvalue()

    def test_show_missing(self, db_path, output):
        assert cli.main(["--db", db_path, "show", "nope"]) == 1
        assert "No work item" in output.getvalue()

    def test_retry(self, db_path, output):
        [item] = seed(db_path, order(), dead_letter=True)
        assert cli.main(["--db", db_path, "retry", item.id]) == 0
        assert fetch(db_path, item.id).status is WorkItemStatus.PENDING

    def test_retry_not_dead_lettered(self, db_path, output):
        [item] = seed(db_path, order())
        assert cli.main(["--db", db_path, "retry", item.id]) == 1
        assert "nothing to retry" in output.getvalue()

    def test_invalidate(self, db_path, output):
        [item] = seed(db_path, order())
        assert cli.main(["--db", db_path, "invalidate", item.id, "--reason", "canceled at broker"]) == 0
        after = fetch(db_path, item.id)
        assert after.status is WorkItemStatus.DEAD_LETTER
        assert after.last_error == "Invalidated: canceled at broker"

    def test_kill_switch_enqueues(self, db_path, output):
        assert cli.main(["--db", db_path, "kill-switch", "--close-positions"]) == 0

        async def _pending():
            async with SqliteRepository(db_path) as repo:
                return await repo.list_work_items(status=WorkItemStatus.PENDING)

        [item] = asyncio.run(_pending())
        assert item.type is WorkItemType.KILL_SWITCH
        assert item.payload.close_positions is True

    def test_kill_switch_off(self, db_path, output):
        async def _engage():
            async with SqliteRepository(db_path) as repo:
                await repo.set_status(kill_switch_active=True)

        async def _active():
            async with SqliteRepository(db_path) as repo:
                return (await repo.get_status()).kill_switch_active

        asyncio.run(_engage())
        assert cli.main(["--db", db_path, "kill-switch", "--off"]) == 0
        assert asyncio.run(_active()) is False
        assert "deactivated" in output.getvalue()

    def test_stats(self, db_path, output):
        seed(db_path, order(), order("MSFT"))
        assert cli.main(["--db", db_path, "stats"]) == 0
        text = output.getvalue()
        assert "PENDING" in text
        assert "Kill switch" in text


class TestAllowListEnforcement:
    async def test_empty_list_allows_all(self):
        assert (await AllowListEnforcement().can_trade_symbol("AAPL")).eligible

    async def test_from_env(self):
        enforcement = AllowListEnforcement.from_env({"TRADECUE_APPROVED_SYMBOLS": "aapl, msft"})
        assert (await enforcement.can_trade_symbol("MSFT")).eligible
        denied = await enforcement.can_trade_symbol("TSLA")
        assert not denied.eligible
        assert "TSLA" in denied.reason


class TestAlpacaTradability:
    """Tradability lookups go through the gateway and are cached."""

    @staticmethod
    def tradability(handler, calls):
        def record(request):
            calls.append(request)
            return handler(request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(record))
        gateway = AlpacaGateway(AlpacaConfig(api_key="k", secret_key="s"), client=client)
        return AlpacaTradability(gateway), client

    async def test_lookup_is_cached(self):
        calls = []
        service, client = self.tradability(
            lambda r: httpx.Response(200, json={"symbol": "AAPL", "tradable": True, "status": "active"}),
            calls,
        )
        async with client:
            assert (await service.validate_symbol_tradable("AAPL")).tradable
            assert (await service.validate_symbol_tradable("aapl")).tradable
        assert len(calls) == 1

    async def test_unknown_symbol(self):
        calls = []
        service, client = self.tradability(
            lambda r: httpx.Response(404, json={"message": "asset not found"}), calls
        )
        async with client:
            result = await service.validate_symbol_tradable("ZZZZ")
        assert not result.tradable

    async def test_sync_fills_cache(self):
        assets = [
            {"symbol": "AAPL", "tradable": True, "status": "active"},
            {"symbol": "OLD", "tradable": False, "status": "inactive"},
            {"id": "x-1"},
        ]
        calls = []
        service, client = self.tradability(lambda r: httpx.Response(200, json=assets), calls)
        async with client:
            result = await service.sync_asset_universe("us_equity")
            assert not (await service.validate_symbol_tradable("OLD")).tradable

        assert (result.synced, result.tradable) == (2, 1)
        assert len(result.errors) == 1
        assert len(calls) == 1
