"""Command line front end for managing the squad and its missions."""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Callable, List, Optional

from ..config import SettingsLoader
from ..ledger import MemberNotFoundError, ValidationError
from ..mission import SettlementInProgressError, format_remaining
from ..scheduler import CountdownScheduler
from ..service import SquadService
from ..sync_codec import SyncSnapshot
from ..telemetry import get_telemetry


def _load_service(args: argparse.Namespace) -> SquadService:
    settings = SettingsLoader(args.settings).load()
    return SquadService(args.db, settings=settings)


def _resolve_member_id(service: SquadService, ref: str) -> str:
    """Accept either a member id or an exact member name."""
    if service.ledger.get_member(ref) is not None:
        return ref
    matches = [m.id for m in service.ledger.members if m.name == ref]
    if len(matches) == 1:
        return matches[0]
    if matches:
        raise ValidationError(f"Name '{ref}' is ambiguous; use the member id")
    raise MemberNotFoundError(ref)


def cmd_roster(args: argparse.Namespace) -> None:
    service = _load_service(args)
    members = [member.to_dict() for member in service.members()]
    if args.json:
        print(json.dumps(members, ensure_ascii=False, indent=2))
        return
    if not members:
        print("Roster is empty.")
        return
    for member in members:
        print(f"{member['id']}  {member['avatar']} {member['name']}  owes {member['totalPenalties']:g}")


def cmd_add_member(args: argparse.Namespace) -> None:
    service = _load_service(args)
    member = service.add_member(args.name, args.avatar)
    print(f"Added {member.name} ({member.id})")


def cmd_edit_member(args: argparse.Namespace) -> None:
    service = _load_service(args)
    member = service.edit_member(
        _resolve_member_id(service, args.member), name=args.name, avatar=args.avatar
    )
    print(f"Updated {member.name} ({member.id})")


def cmd_remove_member(args: argparse.Namespace) -> None:
    service = _load_service(args)
    member = service.remove_member(_resolve_member_id(service, args.member))
    print(f"Removed {member.name} ({member.id})")


def cmd_start(args: argparse.Namespace) -> None:
    service = _load_service(args)
    ids = [_resolve_member_id(service, ref) for ref in args.members]
    mission = service.start_mission(
        ids,
        game_name=args.game,
        penalty_amount=args.penalty,
        duration_minutes=args.minutes,
    )
    print(
        f"Mission {mission.id} for {mission.game_name}: {len(mission.participants)} participants, "
        f"penalty {mission.penalty_amount:g}, deadline {mission.start_time.isoformat()}"
    )


def cmd_check_in(args: argparse.Namespace) -> None:
    service = _load_service(args)
    member_id = _resolve_member_id(service, args.member)
    if service.check_in(member_id):
        state = service.mission.state.value if service.mission else "none"
        print(f"Checked in {member_id} (mission {state})")
    else:
        print("Check-in ignored: no assembling mission for that member.")


def cmd_status(args: argparse.Namespace) -> None:
    service = _load_service(args)
    status = service.status()
    if args.json:
        print(json.dumps(status, ensure_ascii=False, indent=2))
        return
    if status["mission"] is None:
        print("No active mission.")
        return
    print(f"{status['game']} [{status['state']}] {status['remaining']} left, penalty {status['penalty']:g}")
    for participant in status["participants"]:
        print(f"  - {participant['name'] or participant['member_id']}: {participant['status']}")


def cmd_cancel(args: argparse.Namespace) -> None:
    service = _load_service(args)
    service.cancel_mission()
    print("Mission cancelled.")


def cmd_watch(args: argparse.Namespace) -> None:
    service = _load_service(args)
    if service.mission is None:
        print("No active mission.")
        return

    def on_tick(remaining) -> None:
        if not args.quiet:
            print(f"\r{format_remaining(remaining)}", end="", flush=True)

    known = {record.id for record in service.history()}
    scheduler = CountdownScheduler(service, on_tick=on_tick, refresh_each_tick=True)
    asyncio.run(scheduler.run_until_settled())
    print()
    mission = service.mission
    print(f"Mission is now {mission.state.value if mission else 'cleared'}.")
    for record in service.history():
        if record.id not in known:
            print(f"  {record.member_name} -{record.amount:g}: {record.roast or ''}")


def cmd_share(args: argparse.Namespace) -> None:
    service = _load_service(args)
    print(service.share_link(args.base_url))


def _prompt_confirm(snapshot: SyncSnapshot) -> bool:
    answer = input(
        f"Shared squad with {len(snapshot.members)} members found. "
        "Load it? This overwrites your local roster and history. [y/N] "
    )
    return answer.strip().lower() in {"y", "yes"}


def cmd_import(args: argparse.Namespace) -> None:
    service = _load_service(args)
    confirm: Callable[[SyncSnapshot], bool] = (lambda _snapshot: True) if args.yes else _prompt_confirm
    outcome = service.import_share_link(args.url, confirm)
    if not outcome.found:
        print("Link carries no sync token.")
    elif outcome.error:
        print(f"Sync token rejected: {outcome.error}")
    elif outcome.accepted:
        print(f"Imported {len(outcome.snapshot.members)} members and {len(outcome.snapshot.history)} records.")
    else:
        print("Import declined; local data unchanged.")
    print(outcome.cleaned_url)


def cmd_history(args: argparse.Namespace) -> None:
    service = _load_service(args)
    records = service.history(args.limit)
    if args.json:
        print(json.dumps([r.to_dict() for r in records], ensure_ascii=False, indent=2))
        return
    if not records:
        print("No penalties yet.")
        return
    for record in records:
        line = f"{record.date}  {record.member_name} skipped {record.game_name}  -{record.amount:g}"
        if record.roast:
            line += f'\n    "{record.roast}"'
        print(line)


def cmd_leaderboard(args: argparse.Namespace) -> None:
    service = _load_service(args)
    for rank, member in enumerate(service.leaderboard(), start=1):
        print(f"{rank:>2}. {member.avatar} {member.name}  {member.total_penalties:g}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Keep your squad punctual.")
    parser.add_argument(
        "--db",
        type=Path,
        default=Path("squad_guardian.db"),
        help="Path to the squad SQLite database (default: squad_guardian.db).",
    )
    parser.add_argument("--settings", type=Path, default=None, help="Alternative settings YAML.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")

    subparsers = parser.add_subparsers(dest="command", required=True)

    roster = subparsers.add_parser("roster", help="List squad members.")
    roster.add_argument("--json", action="store_true", help="Emit JSON output.")
    roster.set_defaults(func=cmd_roster)

    add = subparsers.add_parser("add-member", help="Recruit a new member.")
    add.add_argument("name")
    add.add_argument("--avatar", default=None, help="Emoji or image data URI.")
    add.set_defaults(func=cmd_add_member)

    edit = subparsers.add_parser("edit-member", help="Rename a member or change the avatar.")
    edit.add_argument("member", help="Member id or exact name.")
    edit.add_argument("--name", default=None)
    edit.add_argument("--avatar", default=None)
    edit.set_defaults(func=cmd_edit_member)

    remove = subparsers.add_parser("remove-member", help="Remove a member from the roster.")
    remove.add_argument("member", help="Member id or exact name.")
    remove.set_defaults(func=cmd_remove_member)

    start = subparsers.add_parser("start", help="Open a countdown for the selected members.")
    start.add_argument("members", nargs="+", help="Member ids or exact names.")
    start.add_argument("--game", default=None)
    start.add_argument("--minutes", type=int, default=None)
    start.add_argument("--penalty", type=float, default=None)
    start.set_defaults(func=cmd_start)

    check_in = subparsers.add_parser("check-in", help="Mark a participant as online.")
    check_in.add_argument("member", help="Member id or exact name.")
    check_in.set_defaults(func=cmd_check_in)

    status = subparsers.add_parser("status", help="Show the active mission.")
    status.add_argument("--json", action="store_true", help="Emit JSON output.")
    status.set_defaults(func=cmd_status)

    cancel = subparsers.add_parser("cancel", help="Cancel the active mission without penalties.")
    cancel.set_defaults(func=cmd_cancel)

    watch = subparsers.add_parser("watch", help="Run the countdown until the mission resolves.")
    watch.add_argument("--quiet", action="store_true", help="Do not print the countdown.")
    watch.set_defaults(func=cmd_watch)

    share = subparsers.add_parser("share", help="Print a sync link for the squad.")
    share.add_argument("base_url", help="Origin and path the link should point at.")
    share.set_defaults(func=cmd_share)

    imp = subparsers.add_parser("import", help="Replace local data from a sync link.")
    imp.add_argument("url")
    imp.add_argument("--yes", action="store_true", help="Skip the confirmation prompt.")
    imp.set_defaults(func=cmd_import)

    history = subparsers.add_parser("history", help="Show recent penalties.")
    history.add_argument("--limit", type=int, default=10)
    history.add_argument("--json", action="store_true", help="Emit JSON output.")
    history.set_defaults(func=cmd_history)

    leaderboard = subparsers.add_parser("leaderboard", help="Members ranked by what they owe.")
    leaderboard.set_defaults(func=cmd_leaderboard)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        args.func(args)
    except (ValidationError, MemberNotFoundError, SettlementInProgressError) as exc:
        message = f"Unknown member: {exc}" if isinstance(exc, MemberNotFoundError) else str(exc)
        print(f"error: {message}", file=sys.stderr)
        return 1
    finally:
        # Each invocation is short-lived; persist buffered metrics before exit.
        get_telemetry().flush()
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    sys.exit(main())
