#!/usr/bin/env python3
"""
Ralph Loop — CLI Entry Point.

Usage:
    python3 ralph_main.py '/ralph-loop "Add a /health endpoint" --completion-promise "DONE" --max-iterations 10'
    python3 ralph_main.py "Add a /health endpoint" --completion-promise DONE --max-iterations 10
    python3 ralph_main.py --cancel
"""

import sys
import signal
import argparse
import logging
from pathlib import Path

from ralph_agents import LLMClient
from ralph_command import USAGE, parse_loop_command, parse_loop_tokens
from ralph_config import load_config
from ralph_errors import LoopAlreadyRunningError, RalphLoopError, ValidationError
from ralph_models import LoopState
from ralph_orchestrator import ACTIVE_RUN, cancel_loop, start_loop
from ralph_session import SessionManager
from ralph_tasks import LocalTaskRunner
from ralph_workspace import Workspace

logger = logging.getLogger(__name__)

EXIT_CODES = {
    LoopState.DONE: 0,
    LoopState.EXHAUSTED: 1,
    LoopState.NEEDS_CLARIFICATION: 3,
    LoopState.CANCELLED: 130,
}
EXIT_VALIDATION = 2


def setup_logging(verbose: bool = False, log_file: Path = None):
    """Configure logging with colors."""
    level = logging.DEBUG if verbose else logging.INFO

    COLORS = {
        'DEBUG': '\033[36m', 'INFO': '\033[32m', 'WARNING': '\033[33m',
        'ERROR': '\033[31m', 'CRITICAL': '\033[35m', 'RESET': '\033[0m',
    }

    class ColorFormatter(logging.Formatter):
        def format(self, record):
            color = COLORS.get(record.levelname, '')
            reset = COLORS['RESET']
            record.levelname = f"{color}{record.levelname:<8}{reset}"
            return super().format(record)

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(level)
    console.setFormatter(ColorFormatter(
        '%(asctime)s │ %(levelname)s │ %(name)s │ %(message)s',
        datefmt='%H:%M:%S'
    ))

    root = logging.getLogger()
    root.setLevel(level)
    root.addHandler(console)

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(log_file)
        fh.setLevel(logging.DEBUG)
        fh.setFormatter(logging.Formatter(
            '%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s'
        ))
        root.addHandler(fh)

    logging.getLogger('httpx').setLevel(logging.WARNING)
    logging.getLogger('httpcore').setLevel(logging.WARNING)


def install_sigint_handler():
    """First Ctrl-C cancels cooperatively; a second one aborts."""
    state = {"interrupted": False}

    def _handler(signum, frame):
        if state["interrupted"] or ACTIVE_RUN.active is None:
            raise KeyboardInterrupt
        state["interrupted"] = True
        logger.warning("⚠️ Interrupt received: finishing the current iteration (Ctrl-C again to abort)")
        ACTIVE_RUN.cancel()

    signal.signal(signal.SIGINT, _handler)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Ralph Loop — iterate a coding model until verification passes",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
Command syntax:
  {USAGE}

Examples:
  %(prog)s '/ralph-loop "Fix the failing tests" --completion-promise "DONE" --max-iterations 5'
  %(prog)s "Fix the failing tests" --completion-promise DONE --max-iterations 5 --config ralph.json
  %(prog)s --cancel
        """
    )
    parser.add_argument(
        "command", nargs="*",
        help="The loop command: one quoted string, or its tokens"
    )
    parser.add_argument(
        "--cancel", action="store_true",
        help="Cancel the loop running in this workspace (its process is sent SIGINT) and remove its scratch record"
    )
    parser.add_argument(
        "--config", type=Path, default=None,
        help="Configuration JSON file path"
    )
    parser.add_argument(
        "--working-dir", type=Path, default=Path.cwd(),
        help="Workspace directory (default: current directory)"
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true",
        help="Enable verbose/debug logging"
    )
    parser.add_argument(
        "--log-file", type=Path, default=None,
        help="Write logs to file"
    )
    return parser


def main(argv=None):
    parser = build_parser()
    # Loop flags (--completion-promise, --max-iterations) belong to the command itself
    args, extra = parser.parse_known_args(argv)
    tokens = list(args.command) + list(extra)

    if not tokens and not args.cancel:
        parser.error("Must provide a loop command or use --cancel")

    setup_logging(verbose=args.verbose, log_file=args.log_file)
    working_dir = args.working_dir.resolve()

    try:
        config = load_config(args.config)
    except ValidationError as e:
        logger.error(f"❌ {e}")
        sys.exit(EXIT_VALIDATION)

    workspace = Workspace.local(working_dir, config.confirm_mode)

    if args.cancel:
        cancel_loop(SessionManager(workspace, config))
        sys.exit(0)

    try:
        if len(tokens) == 1:
            loop_config = parse_loop_command(tokens[0], default_max_iterations=config.default_max_iterations)
        else:
            loop_config = parse_loop_tokens(tokens, default_max_iterations=config.default_max_iterations)
    except ValidationError as e:
        logger.error(f"❌ {e}")
        logger.error(f"   Usage: {USAGE}")
        sys.exit(EXIT_VALIDATION)

    install_sigint_handler()
    model = LLMClient(config.model)
    task_runner = LocalTaskRunner(working_dir, config.tasks)

    try:
        result = start_loop(config, loop_config, workspace, task_runner, model)
        logger.info(f"Finished: {result.state.value} after {result.iterations} iteration(s)")
        logger.debug(f"Result: {result.to_dict()}")
        sys.exit(EXIT_CODES.get(result.state, 1))
    except LoopAlreadyRunningError as e:
        logger.error(f"❌ {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("\n⚠️ Interrupted by user")
        sys.exit(130)
    except RalphLoopError as e:
        logger.error(f"❌ {type(e).__name__}: {e}")
        sys.exit(1)
    except Exception as e:
        logger.exception(f"Fatal error: {e}")
        sys.exit(1)
    finally:
        model.close()


if __name__ == "__main__":
    main()
