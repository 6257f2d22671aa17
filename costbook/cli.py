import argparse
import json
import sys
from datetime import datetime
from typing import List, Optional

from costbook.config_loader import is_dry_run
from costbook.errors import CostbookError
from costbook.importer import import_budget_sheet, import_expense_file, save_estimate_items
from costbook.matcher import calculate_match_confidence, is_allocatable, rank_candidates, suggest
from costbook.models import FinancialRecord, SplitInput
from costbook.project_financials import load_line_item_candidates, load_project_financials
from costbook.splits import SplitAllocator, format_split_info
from costbook.supabase_client import SupabaseClient


def _parse_allocation(text: str) -> SplitInput:
    """"<project_id>:<amount>[:notes]" 形式"""
    parts = text.split(":", 2)
    if len(parts) < 2:
        raise argparse.ArgumentTypeError(f"expected PROJECT_ID:AMOUNT, got '{text}'")
    try:
        amount = float(parts[1].replace(",", "").replace("$", ""))
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid amount in '{text}'")
    return SplitInput(project_id=parts[0], split_amount=amount, notes=parts[2] if len(parts) > 2 else None)


def cmd_import_budget(args) -> int:
    result = import_budget_sheet(args.file, default_markup=args.markup, billing_rate=args.billing_rate,
                                 actual_rate=args.actual_rate)
    if not result.success:
        return 1

    print(f"  労務クッション合計: ${result.labor_cushion:,.2f}")
    if args.json:
        with open(args.json, "w", encoding="utf-8") as f:
            json.dump({
                "items": [i.to_estimate_payload(args.estimate_id, n) for n, i in enumerate(result.items)],
                "warnings": [w.to_dict() for w in result.warnings],
                "metadata": result.metadata,
            }, f, ensure_ascii=False, indent=2, default=str)
        print(f"💾 結果を保存しました: {args.json}")

    if args.estimate_id:
        if is_dry_run():
            print("*** DRY_RUNモード: 見積明細は登録しません ***")
            return 0
        client = SupabaseClient.from_env()
        created = save_estimate_items(client, args.estimate_id, result.items)
        print(f"✅ 見積 {args.estimate_id} に明細 {len(created)}件を登録しました")
    return 0


def cmd_import_expenses(args) -> int:
    client = None if args.offline else SupabaseClient.from_env()
    result = import_expense_file(args.file, client=client, default_project_id=args.project_id,
                                 dry_run=is_dry_run())
    for w in result.warnings:
        print(f"  ⚠️ [{w.code}] {w.message}")
    return 0 if result.success else 1


def cmd_split(args) -> int:
    if is_dry_run():
        print("*** DRY_RUNモード: 配賦は行いません ***")
        return 0
    allocator = SplitAllocator(SupabaseClient.from_env(), kind=args.kind)
    if args.replace:
        result = allocator.update_splits(args.parent_id, args.to)
    else:
        result = allocator.create_splits(args.parent_id, args.to)
    if not result.success:
        print(f"❌ 配賦に失敗しました [{result.status}]: {result.error}")
        return 1
    print(f"  {format_split_info(result.splits)}")
    return 0


def cmd_unsplit(args) -> int:
    if is_dry_run():
        print("*** DRY_RUNモード: 配賦解除は行いません ***")
        return 0
    allocator = SplitAllocator(SupabaseClient.from_env(), kind=args.kind)
    result = allocator.delete_splits(args.parent_id)
    if not result.success:
        print(f"❌ 配賦の解除に失敗しました [{result.status}]: {result.error}")
        return 1
    return 0


def cmd_project_total(args) -> int:
    fin = load_project_financials(SupabaseClient.from_env(), args.project_id)
    label = fin.project_number or fin.project_id
    print(f"📊 {label} {fin.project_name or ''}")
    print(f"  見積: ${fin.estimate_total:,.2f}")
    print(f"  売上: ${fin.revenue_total:,.2f}")
    print(f"  経費: ${fin.expense_total:,.2f}")
    margin_pct = f" ({fin.margin_percent:.1f}%)" if fin.margin_percent is not None else ""
    print(f"  粗利: ${fin.margin:,.2f}{margin_pct}")
    return 0


def cmd_suggest(args) -> int:
    client = SupabaseClient.from_env()
    row = client.select_one("expenses", {"id": args.expense_id}, columns="*, payees(payee_name)")
    if not row:
        print(f"❌ 経費が見つかりません: {args.expense_id}")
        return 1
    record = FinancialRecord.from_row(row)
    if not is_allocatable(record):
        print("⚠️ 分割済み、または案件未設定の経費は明細に紐付けできません")
        return 1

    candidates = load_line_item_candidates(client, record.project_id)
    best = suggest(record, candidates)
    if best is None:
        print("🔍 候補となる明細がありません")
        return 0

    by_id = {c.id: c for c in candidates}
    chosen = by_id[best.line_item_id]
    print(f"🎯 推奨: [{chosen.type}] {chosen.description} ${chosen.total:,.2f} "
          f"(確信度 {best.score}, {best.reasons[0]})")
    for s in rank_candidates(record, candidates)[:args.top]:
        c = by_id[s.line_item_id]
        print(f"  {s.score:>3}  [{c.type}] {c.description} ${c.total:,.2f}  {' '.join(s.reasons)}")
    if calculate_match_confidence(record, candidates) >= 75:
        print("✅ 自動選択の対象です（確定は画面で行ってください）")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="costbook", description="予算シート取込と経費・売上の配賦")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("import-budget", help="予算シートを見積明細に変換")
    p.add_argument("file")
    p.add_argument("--estimate-id", help="指定すると estimate_line_items に登録する")
    p.add_argument("--markup", type=float, help="既定マークアップ(%%)")
    p.add_argument("--billing-rate", type=float, help="労務の請求単価/時")
    p.add_argument("--actual-rate", type=float, help="労務の実コスト単価/時")
    p.add_argument("--json", help="変換結果を書き出す JSON パス")
    p.set_defaults(func=cmd_import_budget)

    p = sub.add_parser("import-expenses", help="会計ソフトの取引CSVを経費として取込")
    p.add_argument("file")
    p.add_argument("--project-id", help="案件列が無い・解決できない行の既定案件")
    p.add_argument("--offline", action="store_true", help="リモートに接続せず変換だけ行う")
    p.set_defaults(func=cmd_import_expenses)

    p = sub.add_parser("split", help="経費/売上を複数案件に配賦")
    p.add_argument("kind", choices=["expense", "revenue"])
    p.add_argument("parent_id")
    p.add_argument("--to", type=_parse_allocation, action="append", required=True,
                   help="PROJECT_ID:AMOUNT[:NOTES]（2回以上指定）")
    p.add_argument("--replace", action="store_true", help="既存の配賦を置き換える")
    p.set_defaults(func=cmd_split)

    p = sub.add_parser("unsplit", help="配賦を解除")
    p.add_argument("kind", choices=["expense", "revenue"])
    p.add_argument("parent_id")
    p.set_defaults(func=cmd_unsplit)

    p = sub.add_parser("project-total", help="案件の売上・経費・粗利")
    p.add_argument("project_id")
    p.set_defaults(func=cmd_project_total)

    p = sub.add_parser("suggest", help="経費の配賦先明細を提案")
    p.add_argument("expense_id")
    p.add_argument("--top", type=int, default=5)
    p.set_defaults(func=cmd_suggest)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    print(f"=== costbook {args.command} ({datetime.now().strftime('%Y-%m-%d %H:%M:%S')}) ===")
    try:
        return args.func(args)
    except CostbookError as e:
        print(f"❌ {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
