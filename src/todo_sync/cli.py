import argparse
import asyncio
import json
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Iterable, Optional

from .config.sync_config import ConfigManager
from .core.exceptions import TodoSyncError
from .layers.command_layer.commands import CommandResult, TodoSyncApp
from .utils.enhanced_logger import setup_logging


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="todo-sync", description="Local-first weekly todo manager")
    parser.add_argument("--config-dir", default="config", help="設定ディレクトリ (main.yaml など)")
    parser.add_argument("--db", help="データベースファイルのパス（設定より優先）")

    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("add", help="Todoを追加")
    p.add_argument("day")
    p.add_argument("content")

    p = sub.add_parser("list", help="日ごとのTodoを表示")
    p.add_argument("day")

    p = sub.add_parser("edit", help="Todoの本文を編集")
    p.add_argument("id", type=int)
    p.add_argument("content")

    p = sub.add_parser("delete", help="Todoを削除")
    p.add_argument("id", type=int)

    p = sub.add_parser("move", help="Todoを別の日へ移動")
    p.add_argument("id", type=int)
    p.add_argument("day")

    p = sub.add_parser("reorder", help="日のTodoを指定順で置き換え（全件を指定）")
    p.add_argument("day")
    p.add_argument("contents", nargs="*")

    p = sub.add_parser("export", help="全件スナップショットをJSONで出力")
    p.add_argument("--output", help="出力ファイル。未指定時は標準出力")

    p = sub.add_parser("import", help="JSONスナップショットをマージ")
    p.add_argument("file")

    p = sub.add_parser("sync", help="設定のサーバー (sync.api_url) と同期")
    p.add_argument("--peer-id", help="同期相手として記録する名前（未指定時は server:<api_url>）")

    sub.add_parser("peers", help="既知ピアの一覧")
    return parser


def _report(result: CommandResult) -> int:
    if result.success:
        return 0
    stage = f" [{result.stage.value}]" if result.stage else ""
    print(f"error{stage}: {result.error_type.value}: {result.error_message}", file=sys.stderr)
    return 1


async def run_command(app: TodoSyncApp, args: argparse.Namespace) -> int:
    if args.command == "add":
        result = await app.add_todo(args.day, args.content)
        if result.success:
            print(result.value)
    elif args.command == "list":
        result = await app.list_todos(args.day)
        if result.success:
            for todo in result.value:
                print(f"{todo.id}\t{todo.content}")
    elif args.command == "edit":
        result = await app.edit_todo(args.id, args.content)
    elif args.command == "delete":
        result = await app.delete_todo(args.id)
    elif args.command == "move":
        result = await app.move_todo(args.id, args.day)
    elif args.command == "reorder":
        result = await app.reorder_day(args.day, args.contents)
    elif args.command == "export":
        result = await app.export_snapshot()
        if result.success:
            if args.output:
                Path(args.output).write_text(result.value, encoding="utf-8")
            else:
                print(result.value)
    elif args.command == "import":
        try:
            data = Path(args.file).read_text(encoding="utf-8")
        except OSError as e:
            print(f"error: cannot read {args.file}: {e}", file=sys.stderr)
            return 1
        result = await app.import_snapshot(data)
        if result.success:
            print(result.value.summary())
    elif args.command == "sync":
        # ピア状態はプロセス内のみなので、毎回ローカルIDを採番する
        result = await app.connect_peer()
        if result.success:
            result = await app.run_sync(args.peer_id)
        if result.success:
            print(result.value.summary())
    elif args.command == "peers":
        result = await app.list_peers()
        if result.success:
            for connection in result.value:
                print(json.dumps(connection.to_dict(), ensure_ascii=False))
    else:
        raise SystemExit(f"unknown command: {args.command}")

    return _report(result)


async def _main(args: argparse.Namespace) -> int:
    config = ConfigManager(args.config_dir).load_config()
    if args.db:
        config.storage.database_path = args.db
    setup_logging(asdict(config.logging))

    try:
        app = await TodoSyncApp.open(config)
    except TodoSyncError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1

    async with app:
        return await run_command(app, args)


def main(argv: Optional[Iterable[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    return asyncio.run(_main(args))


if __name__ == "__main__":
    sys.exit(main())
