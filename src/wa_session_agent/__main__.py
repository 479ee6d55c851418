"""
WhatsApp Session Agent - Entry Point

Runs the agent, or maintains the stored session.
"""

import asyncio
import argparse
import logging
import sys

import yaml

from .config import create_default_config, load_config
from .core.credentials import CredentialStore, format_bytes
from .core.pairing import InvalidPhoneNumberError
from .daemon import resolve_pairing, run_daemon

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

CONFIRM_ANSWERS = ("yes", "y", "sim", "s")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="wa_session_agent",
        description="WhatsApp Session Agent",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run the agent (pairs on first run)
  python -m wa_session_agent

  # Use a specific configuration file
  python -m wa_session_agent --config /etc/wa-agent/agent.yaml run

  # Inspect or reset the stored session
  python -m wa_session_agent session status
  python -m wa_session_agent session backup
  python -m wa_session_agent session clear --yes

  # Write a default agent.yaml
  python -m wa_session_agent init-config
"""
    )

    parser.add_argument(
        '--config', '-c',
        help='Path to agent.yaml (default: search ./agent.yaml, ./config/agent.yaml)'
    )

    parser.add_argument(
        '--debug',
        action='store_true',
        help='Enable debug logging'
    )

    subparsers = parser.add_subparsers(dest='command')

    subparsers.add_parser('run', help='Run the agent (default)')

    session_parser = subparsers.add_parser('session', help='Maintain the stored session')
    session_commands = session_parser.add_subparsers(dest='session_command', required=True)
    session_commands.add_parser('status', help='Show stored session details')
    session_commands.add_parser('backup', help='Copy the stored session to a backup directory')
    clear_parser = session_commands.add_parser(
        'clear', help='Move the stored session aside so the next run pairs again'
    )
    clear_parser.add_argument(
        '--yes', '-y',
        action='store_true',
        help='Do not ask for confirmation'
    )

    init_parser = subparsers.add_parser('init-config', help='Write a default agent.yaml')
    init_parser.add_argument(
        'path',
        nargs='?',
        default=None,
        help='Output path (default: ./agent.yaml)'
    )

    return parser


def cmd_run(config) -> int:
    store = CredentialStore(config.session_path)

    # Bootstrap is interactive and happens before the event loop starts
    try:
        pairing = resolve_pairing(config, store)
    except InvalidPhoneNumberError as e:
        logger.error(f"Configured phone number rejected: {e}")
        print(f"\n❌ {e}")
        print("Fix pairing.phone_number in agent.yaml or remove it to be asked.")
        return 1
    except (EOFError, KeyboardInterrupt):
        print("\n👋 Pairing cancelled")
        return 1

    try:
        return asyncio.run(run_daemon(config, pairing))
    except KeyboardInterrupt:
        print("\n\n👋 Shutting down agent...")
        return 0


def cmd_session(config, args, input_func=input) -> int:
    store = CredentialStore(config.session_path)

    if args.session_command == 'status':
        info = store.info()
        if info is None or not store.exists():
            print(f"📂 No stored session at {config.session_path}")
            return 0
        print("📊 SESSION INFORMATION")
        print(f"   Path: {info.path}")
        print(f"   Created: {info.created.isoformat()}")
        print(f"   Modified: {info.modified.isoformat()}")
        print(f"   Files: {info.files}")
        print(f"   Size: {format_bytes(info.size)}")
        return 0

    if args.session_command == 'backup':
        target = store.backup()
        if target is None:
            print(f"📂 No stored session at {config.session_path}")
            return 1
        print(f"💾 Session backed up to {target}")
        return 0

    if args.session_command == 'clear':
        if not args.yes:
            print("⚠️  The stored session will be moved aside and the bot must pair again.")
            answer = input_func("Continue? (yes/no): ").strip().lower()
            if answer not in CONFIRM_ANSWERS:
                print("❌ Cancelled")
                return 1

        target = store.clear()
        if target is None:
            print(f"📂 No stored session at {config.session_path}")
            return 0
        print(f"🗑️  Session moved to {target}")
        return 0

    return 1


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == 'init-config':
        try:
            path = create_default_config(args.path)
        except FileExistsError as e:
            print(f"❌ {e}")
            return 1
        print(f"✅ Configuration written to {path}")
        return 0

    try:
        config = load_config(args.config)
    except (FileNotFoundError, KeyError, ValueError, yaml.YAMLError) as e:
        logger.error(f"Failed to load configuration: {e}")
        print(f"\n❌ Configuration error: {e}")
        return 1

    level = logging.DEBUG if args.debug else getattr(logging, config.logging.level.upper(), logging.INFO)
    logging.getLogger().setLevel(level)
    for handler in logging.getLogger().handlers:
        handler.setFormatter(logging.Formatter(config.logging.format))

    if args.command == 'session':
        return cmd_session(config, args)

    return cmd_run(config)


def run():
    """Entry point for console script"""
    sys.exit(main())


if __name__ == '__main__':
    run()
