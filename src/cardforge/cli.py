"""CardForge CLI

コマンドラインインターフェース。
"""

import argparse
import json
import logging
import sys
from datetime import datetime


def main():
    """メインエントリーポイント"""
    parser = argparse.ArgumentParser(
        description="CardForge - イベントソーシングによる製造トラッキング",
        prog="cardforge",
    )
    parser.add_argument("--config", help="設定ファイル（省略時は cardforge.config.yaml を探索）")

    subparsers = parser.add_subparsers(dest="command", help="利用可能なコマンド")

    # init コマンド
    subparsers.add_parser("init", help="Vaultを初期化")

    # submit コマンド
    submit_parser = subparsers.add_parser("submit", help="コマンドを送信")
    submit_parser.add_argument(
        "aggregate_type", choices=["sheet", "card", "assembly"], help="集約種別"
    )
    submit_parser.add_argument("--id", dest="aggregate_id", help="集約ID（シート登録時は省略可）")
    submit_parser.add_argument(
        "--command",
        dest="payload",
        required=True,
        help='コマンドJSON（例: \'{"command": "cut", "fan_out": 18}\'）',
    )

    # gather コマンド
    gather_parser = subparsers.add_parser("gather", help="カードをセットへ収集")
    gather_parser.add_argument("assembly_id", help="セットID（例: A-J1044-S003）")
    gather_parser.add_argument("card_id", help="カードID（例: J1044-S003-07）")
    gather_parser.add_argument("--actor", default="cli", help="作業者")
    gather_parser.add_argument("--station", help="ステーション")

    # query コマンド
    query_parser = subparsers.add_parser("query", help="読み取りモデルを参照")
    query_parser.add_argument("model", help="モデル名（cards, sheets, assemblies, ...）")
    query_parser.add_argument("key", help="行キー")

    # replay コマンド
    replay_parser = subparsers.add_parser("replay", help="読み取りモデルを再構築")
    replay_parser.add_argument("model", help="モデル名")

    # verify コマンド
    subparsers.add_parser("verify", help="イベントログのハッシュチェーンを検証")

    # check-timeouts コマンド
    timeout_parser = subparsers.add_parser("check-timeouts", help="セットのタイムアウト判定")
    timeout_parser.add_argument("--now", help="判定時刻（ISO 8601、省略時は現在時刻）")

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    _configure(args)

    if args.command == "init":
        run_init(args)
    elif args.command == "submit":
        run_submit(args)
    elif args.command == "gather":
        run_gather(args)
    elif args.command == "query":
        run_query(args)
    elif args.command == "replay":
        run_replay(args)
    elif args.command == "verify":
        run_verify(args)
    elif args.command == "check-timeouts":
        run_check_timeouts(args)


def _configure(args):
    """設定の読み込みとロギング設定"""
    from .core.config import get_settings, reload_settings

    settings = reload_settings(args.config) if args.config else get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.logging.level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _open_service():
    from .core.config import get_settings
    from .core.service import CardForgeService

    return CardForgeService.open(get_settings())


def _print_result(result) -> None:
    """CommandResult を表示し、失敗なら終了コード1"""
    if result.ok:
        suffix = "（処理済み）" if result.duplicate else ""
        print(f"✓ {result.aggregate_type} {result.aggregate_id}{suffix}")
        for event in result.events:
            print(f"  #{event['sequence']} {event['type']} {event['aggregate_id']} v{event['version']}")
        if result.state is not None:
            print(json.dumps(result.state, ensure_ascii=False, indent=2))
        return

    print(f"✗ {result.error.message}", file=sys.stderr)
    sys.exit(1)


def run_init(args):
    """Vaultを初期化"""
    from .core.ar import EventLog
    from .core.config import get_settings

    settings = get_settings()
    vault_path = settings.get_vault_path()
    log = EventLog(vault_path, lock_timeout=settings.vault.lock_timeout_seconds)

    print(f"✓ Vault ディレクトリを作成しました: {vault_path}")
    print(f"✓ イベント数: {log.count_events()}")
    print("\nCardForge の準備ができました！")
    print("\n次のステップ:")
    print('  1. cardforge submit sheet --id J1044-S003 --command \'{"command": "register"}\'')
    print("  2. cardforge query sheets J1044-S003")


def run_submit(args):
    """コマンドを送信"""
    try:
        payload = json.loads(args.payload)
    except json.JSONDecodeError as e:
        print(f"✗ --command はJSONで指定してください: {e}", file=sys.stderr)
        sys.exit(1)

    service = _open_service()
    try:
        result = service.submit_command(args.aggregate_type, args.aggregate_id, payload)
    finally:
        service.close()
    _print_result(result)


def run_gather(args):
    """カードをセットへ収集"""
    service = _open_service()
    try:
        result = service.gather(
            args.assembly_id, args.card_id, actor=args.actor, station=args.station
        )
    finally:
        service.close()
    _print_result(result)


def run_query(args):
    """読み取りモデルの1行を表示"""
    from .core.errors import NotFound

    service = _open_service()
    try:
        row = service.query(args.model, args.key)
    except NotFound as e:
        print(f"✗ {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        service.close()

    print(f"=== {args.model}: {row.key} (sequence {row.last_applied_sequence}) ===")
    print(json.dumps(row.data, ensure_ascii=False, indent=2))


def run_replay(args):
    """読み取りモデルを再構築"""
    from .core.errors import NotFound

    service = _open_service()
    try:
        watermark = service.replay(args.model)
    except NotFound as e:
        print(f"✗ {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        service.close()

    print(f"✓ {args.model} を再構築しました（sequence {watermark}）")


def run_verify(args):
    """ハッシュチェーンを検証"""
    from .core.ar import EventLog
    from .core.config import get_settings

    settings = get_settings()
    log = EventLog(settings.get_vault_path(), lock_timeout=settings.vault.lock_timeout_seconds)
    ok, message = log.verify_chain()
    if not ok:
        print(f"✗ {message}", file=sys.stderr)
        sys.exit(1)
    print(f"✓ チェーンは正常です（イベント数: {log.count_events()}）")


def run_check_timeouts(args):
    """タイムアウトしたセットを ERROR にする"""
    try:
        now = datetime.fromisoformat(args.now) if args.now else None
    except ValueError as e:
        print(f"✗ --now はISO 8601形式で指定してください: {e}", file=sys.stderr)
        sys.exit(1)

    service = _open_service()
    try:
        timed_out = service.check_timeouts(now)
    finally:
        service.close()

    if not timed_out:
        print("タイムアウトしたセットはありません。")
        return
    print(f"⚠ {len(timed_out)}件のセットを ERROR にしました")
    for assembly_id in timed_out:
        print(f"  - {assembly_id}")


if __name__ == "__main__":  # pragma: no cover
    main()
