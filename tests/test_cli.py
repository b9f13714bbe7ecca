"""Unit tests describing the CLI presentation layer contract."""

from __future__ import annotations

import argparse
from dataclasses import replace
from pathlib import Path
from typing import Iterable, Mapping
from unittest.mock import Mock

import pytest

from order_ledger import cli, core_logic
from order_ledger.catalog import Product, SnapshotCache
from order_ledger.errors import ExternalSourceError, NotFoundError, TransactionError, ValidationError


WRITE_COMMANDS = {
    "add-order",
    "update-order",
    "delete-order",
    "complete",
    "edit-history",
    "delete-history",
}

READ_COMMANDS = {
    "orders",
    "history",
    "stats",
    "products",
}

# ---------------------------------------------------------------------------
# Parser construction
# ---------------------------------------------------------------------------


def test_build_parser_sets_program_metadata():
    """build_parser should set user-facing program metadata."""

    parser = cli.build_parser()
    assert isinstance(parser, argparse.ArgumentParser)
    assert parser.prog == "order-ledger"


def test_configure_subcommands_registers_all_commands(cli_parser):
    """configure_subcommands should wire every read and write sub-command."""

    command_table = cli.configure_subcommands(cli_parser)
    assert set(command_table) == WRITE_COMMANDS | READ_COMMANDS
    assert _registered_choices(cli_parser) == WRITE_COMMANDS | READ_COMMANDS


def test_register_write_commands_returns_command_specs(subparsers_action):
    """register_write_commands should return a mapping of CommandSpec objects."""

    specs = cli.register_write_commands(subparsers_action)
    assert set(specs) == WRITE_COMMANDS
    for spec in specs.values():
        assert isinstance(spec, cli.CommandSpec)
        assert spec.name in subparsers_action.choices


def test_register_read_commands_returns_command_specs(subparsers_action):
    """register_read_commands should return a mapping of CommandSpec objects."""

    specs = cli.register_read_commands(subparsers_action)
    assert set(specs) == READ_COMMANDS


def test_add_order_parser_requires_core_fields():
    """add-order needs a date, code and quantity; the name is optional."""

    parser = cli.build_parser()
    cli.configure_subcommands(parser)

    args = parser.parse_args(
        ["add-order", "--delivery-date", "2025-01-10", "--product-code", "X9", "--quantity", "5"]
    )
    assert (args.command, args.product_name) == ("add-order", None)
    with pytest.raises(SystemExit):
        parser.parse_args(["add-order", "--product-code", "X9"])


def test_edit_history_parser_accepts_line_item_id():
    """edit-history exposes the disambiguating line item id."""

    parser = cli.build_parser()
    cli.configure_subcommands(parser)

    args = parser.parse_args(
        [
            "edit-history",
            "--bucket-id",
            "B1",
            "--product-code",
            "X9",
            "--quantity",
            "3",
            "--line-item-id",
            "L1",
        ]
    )
    assert (args.bucket_id, args.product_code, args.quantity, args.line_item_id) == ("B1", "X9", "3", "L1")


def test_stats_parser_month_is_optional(tmp_path):
    """stats defaults to the full year and accepts an export path."""

    parser = cli.build_parser()
    cli.configure_subcommands(parser)

    args = parser.parse_args(["stats", "--year", "2025", "--export", str(tmp_path / "s.xlsx")])
    assert args.month is None
    assert args.export == tmp_path / "s.xlsx"


# ---------------------------------------------------------------------------
# Runtime context and dispatch helpers
# ---------------------------------------------------------------------------


def test_load_runtime_context_checks_schema(config_factory):
    """The CLI refuses workbooks declared with another schema version."""

    bundle = config_factory(schema_version="0.1.0")
    with pytest.raises(RuntimeError):
        cli.load_runtime_context(bundle.config_path)


def test_load_runtime_context_uses_provided_path(config_file, monkeypatch, runtime_context):
    """load_runtime_context should load settings from the specified config path."""

    def fake_loader(path: Path | None) -> core_logic.RuntimeContext:
        assert path == config_file
        return runtime_context

    monkeypatch.setattr(core_logic, "load_runtime_context", fake_loader)
    assert cli.load_runtime_context(config_file) is runtime_context


def test_dispatch_command_handles_unknown_commands(runtime_context):
    """dispatch_command should raise a clear error for unknown commands."""

    args = argparse.Namespace(command="unknown")
    with pytest.raises(KeyError):
        cli.dispatch_command(runtime_context, args, {})


def test_build_command_table_indexes_specs(command_spec_iterable):
    """build_command_table should index specs by their command names."""

    table = cli.build_command_table(command_spec_iterable)
    assert set(table) == {spec.name for spec in command_spec_iterable}


def test_build_command_table_detects_duplicate_commands():
    """build_command_table should guard against duplicate command names."""

    specs = [
        cli.CommandSpec("alpha", "A", lambda s: s.add_parser("alpha"), lambda c, a: 0),
        cli.CommandSpec("alpha", "Duplicate", lambda s: s.add_parser("alpha"), lambda c, a: 0),
    ]
    with pytest.raises(ValueError):
        cli.build_command_table(specs)


# ---------------------------------------------------------------------------
# Translation and executors
# ---------------------------------------------------------------------------


def test_translate_add_order_uses_explicit_name(runtime_context):
    """An explicit product name is passed through untouched."""

    args = argparse.Namespace(
        delivery_date="2025-01-10",
        product_code="X9",
        product_name="Steel bar",
        quantity="5",
    )
    command = cli.translate_add_order(runtime_context, args)
    assert command == core_logic.PendingOrderCommand("2025-01-10", "X9", "Steel bar", "5")


def test_translate_add_order_falls_back_to_catalog(runtime_context, monkeypatch):
    """Without --product-name the catalog supplies the name."""

    monkeypatch.setattr(
        cli,
        "build_product_cache",
        lambda settings: _StaticCache([Product("X9", "Steel bar"), Product("Y1", "Plate")]),
    )
    args = argparse.Namespace(delivery_date="2025-01-10", product_code="Y1", product_name=None, quantity="5")

    assert cli.translate_add_order(runtime_context, args).product_name == "Plate"


def test_translate_add_order_reports_unavailable_catalog(runtime_context, monkeypatch):
    """A down catalog asks the caller for an explicit product name."""

    monkeypatch.setattr(
        cli,
        "build_product_cache",
        lambda settings: SnapshotCache(
            Mock(side_effect=ExternalSourceError("product", "timeout")),
            name="product",
            require_data=True,
        ),
    )
    args = argparse.Namespace(delivery_date="2025-01-10", product_code="Y1", product_name=None, quantity="5")

    with pytest.raises(ValidationError, match="--product-name"):
        cli.translate_add_order(runtime_context, args)
    assert core_logic.list_pending_orders(runtime_context) == {}


def test_run_add_order_without_catalog_name_is_rejected(runtime_context):
    """An unknown code with no name cannot become a pending order."""

    args = argparse.Namespace(delivery_date="2025-01-10", product_code="X9", product_name=None, quantity="5")
    with pytest.raises(ValidationError):
        cli.run_add_order(runtime_context, args)


def test_run_complete_invokes_bll(runtime_context, monkeypatch, capsys):
    """run_complete should hand the order id to complete_order."""

    order = core_logic.create_pending_order(
        runtime_context,
        core_logic.PendingOrderCommand("2025-01-10", "X9", "Steel bar", "5"),
    )
    args = argparse.Namespace(order_id=order.order_id)

    assert cli.run_complete(runtime_context, args) == 0
    assert f"Completed {order.order_id}" in capsys.readouterr().out
    assert core_logic.list_pending_orders(runtime_context) == {}


def test_run_products_report_filters(runtime_context, monkeypatch, capsys):
    """products --search prints only matching catalog rows."""

    monkeypatch.setattr(
        cli,
        "build_product_cache",
        lambda settings: _StaticCache([Product("X9", "Steel bar", "Blue"), Product("Y1", "Plate")]),
    )

    assert cli.run_products_report(runtime_context, argparse.Namespace(search="blue")) == 0
    assert capsys.readouterr().out.splitlines() == ["X9  Steel bar  Blue"]


def test_run_stats_report_exports_workbook(runtime_context, tmp_path, capsys):
    """stats --export writes the summary workbook."""

    destination = tmp_path / "stats.xlsx"
    args = argparse.Namespace(year="2025", month="1", export=destination)

    assert cli.run_stats_report(runtime_context, args) == 0
    out = capsys.readouterr().out
    assert "January 2025" in out
    assert destination.exists()


# ---------------------------------------------------------------------------
# Error handling and persistence
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "error, expected",
    [
        (ValidationError("invalid"), 2),
        (NotFoundError("Pending order", "P1"), 2),
        (FileNotFoundError("missing"), 3),
        (TransactionError("complete_order", "disk full"), 4),
        (ValueError("bad value"), 1),
    ],
)
def test_handle_cli_error_returns_exit_code(error: Exception, expected: int, caplog: pytest.LogCaptureFixture):
    """handle_cli_error should convert exceptions into exit codes."""

    caplog.set_level("ERROR")
    assert cli.handle_cli_error(error) == expected
    assert any(str(error) in record.getMessage() for record in caplog.records)


def test_persist_workbook_handles_read_only_workbooks(runtime_context, monkeypatch):
    """persist_workbook should surface permission problems as RuntimeError."""

    def fake_persist(_: core_logic.RuntimeContext) -> None:
        raise PermissionError("read-only")

    monkeypatch.setattr(cli.core_logic, "persist_context", fake_persist)
    with pytest.raises(RuntimeError, match="read-only"):
        cli.persist_workbook(runtime_context)


# ---------------------------------------------------------------------------
# Program entry point
# ---------------------------------------------------------------------------


def test_main_skips_extra_save_when_autosave_enabled(monkeypatch, runtime_context):
    """Transactions already saved, so main does not persist again."""

    _patch_main(monkeypatch, runtime_context, dispatch=lambda *_: 0)
    monkeypatch.setattr(cli, "persist_workbook", lambda _: pytest.fail("should not persist"))

    assert cli.main(["orders"]) == 0


def test_main_persists_on_success_without_autosave(monkeypatch, runtime_context):
    """With AutoSave off main saves once after a successful command."""

    context = core_logic.RuntimeContext(
        settings=replace(runtime_context.settings, autosave=False),
        workbook=runtime_context.workbook,
    )
    _patch_main(monkeypatch, context, dispatch=lambda *_: 0)
    persisted = {}
    monkeypatch.setattr(cli, "persist_workbook", lambda ctx: persisted.setdefault("context", ctx))

    assert cli.main(["orders"]) == 0
    assert persisted["context"] is context


def test_main_handles_bll_errors(monkeypatch, runtime_context):
    """main should surface business rule violations as non-zero exits."""

    def fake_dispatch(*_: object) -> int:
        raise NotFoundError("Pending order", "P404")

    _patch_main(monkeypatch, runtime_context, dispatch=fake_dispatch)
    assert cli.main(["orders"]) == 2


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class _StaticCache:
    def __init__(self, records):
        self._records = tuple(records)

    def get(self):
        return self._records


def _patch_main(monkeypatch, context, *, dispatch) -> None:
    parser = _stub_parser(command="orders")
    command_table: Mapping[str, cli.CommandSpec] = {
        "orders": cli.CommandSpec("orders", "help", lambda _: parser, lambda *_: 0)
    }
    monkeypatch.setattr(cli, "build_parser", lambda: parser)
    monkeypatch.setattr(cli, "configure_subcommands", lambda _: command_table)
    monkeypatch.setattr(cli, "load_runtime_context", lambda path=None: context)
    monkeypatch.setattr(cli, "dispatch_command", dispatch)


def _stub_parser(command: str) -> argparse.ArgumentParser:
    """Create a stub parser that always returns the supplied command."""

    class _Stub(argparse.ArgumentParser):
        def parse_args(self, args: Iterable[str] | None = None, namespace: argparse.Namespace | None = None):  # type: ignore[override]
            return argparse.Namespace(command=command)

    return _Stub(prog="test")


def _registered_choices(parser: argparse.ArgumentParser) -> set[str]:
    """Return the set of registered sub-command names for assertion helpers."""

    actions = getattr(parser, "_subparsers", None)
    if not actions:
        return set()
    group_actions = actions._group_actions  # type: ignore[attr-defined]
    if not group_actions:
        return set()
    return set(group_actions[0].choices)  # type: ignore[index]
