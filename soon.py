#!/usr/bin/python3
#
# Predict your next shell command from bash, zsh or fish history
# using directory context and command frequency
#
# Copyright (c) 2021, Mitch Haile.
#
# MIT License
#

import os
import sys
import logging
import argparse
from collections import Counter, namedtuple
from prompt_toolkit import print_formatted_text
from prompt_toolkit.formatted_text import FormattedText

__version__ = "0.1.0"

logger = logging.getLogger(__name__)

LOG_FILE = os.path.expanduser("~/.soon.log")
LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'

# Checked in this order, so "zsh" wins over "bash"
KNOWN_SHELLS = ("zsh", "bash", "fish")
UNKNOWN_SHELL = "unknown"

HISTORY_FILES = {
    'bash': '.bash_history',
    'zsh': '.zsh_history',
    'fish': os.path.join('.local', 'share', 'fish', 'fish_history'),
}

TOP_COMMANDS = 10
MAX_COMMAND_WIDTH = 38

CD_PREFIX = 'cd '
# `cd /`, `cd ..` and `cd .` name no directory a cwd basename can match
NON_DIRECTORY_KEYS = ('', '.', '..')
FISH_CMD_PREFIX = '- cmd: '
FISH_PATH_PREFIX = '  path: '
# Extended history lines look like ': 1700000000:0;ls -la'
ZSH_METADATA_CHARS = '0123456789:; '


def setup_logging(debug=False):
    """Send log records to LOG_FILE, or stderr if it cannot be opened"""
    level = logging.DEBUG if debug else logging.WARNING
    try:
        logging.basicConfig(level=level, format=LOG_FORMAT, filename=LOG_FILE, filemode='a')
    except OSError:
        logging.basicConfig(level=level, format=LOG_FORMAT)
        logger.warning(f"Could not open log file {LOG_FILE}, logging to stderr")
    logging.getLogger().setLevel(level)


HistoryItem = namedtuple('HistoryItem', ['cmd', 'path'], defaults=(None,))
HistoryItem.__doc__ = "One command from a history file, with the directory it ran in when known"


def detect_shell(override=None, environ=None):
    """Return the override if given, else classify $SHELL as zsh, bash, fish or unknown"""
    if override is not None:
        return override
    if environ is None:
        environ = os.environ

    shell = environ.get('SHELL')
    if not shell:
        return UNKNOWN_SHELL

    shell = shell.lower()
    for name in KNOWN_SHELLS:
        if name in shell:
            return name
    return UNKNOWN_SHELL


def get_home_dir():
    """Resolve the user's home directory, or None when it cannot be found"""
    home = os.path.expanduser('~')
    if home == '~' or not home:
        return None
    return home


def history_path(shell, home=None):
    """Map a shell name to its history file under the home directory"""
    if home is None:
        home = get_home_dir()
    if not home:
        return None

    relative = HISTORY_FILES.get(shell)
    if relative is None:
        return None
    return os.path.join(home, relative)


def read_history_lines(path):
    """Read a history file into a list of lines with error handling

    Lines that are not valid UTF-8 are skipped; zsh in particular writes
    metafied bytes for non-ASCII input.
    """
    lines = []
    skipped = 0
    try:
        with open(path, 'rb') as f:
            for raw in f:
                try:
                    line = raw.decode('utf-8')
                except UnicodeDecodeError:
                    skipped += 1
                    continue
                lines.append(line.rstrip('\r\n'))
    except (OSError, IOError) as e:
        logger.warning(f"Could not read history file {path}: {e}")
        return []

    if skipped:
        logger.debug(f"Skipped {skipped} undecodable lines in {path}")
    return lines


def parse_fish_history(lines):
    """Parse fish's `- cmd:` / `  path:` records into HistoryItems"""
    items = []
    cmd = None
    path = None

    def flush():
        if cmd:
            items.append(HistoryItem(cmd, path))

    for line in lines:
        if line.startswith(FISH_CMD_PREFIX):
            flush()
            cmd = line[len(FISH_CMD_PREFIX):].strip()
            path = None
        elif line.startswith(FISH_PATH_PREFIX):
            # A path with no command before it is dropped
            if cmd is not None:
                path = line[len(FISH_PATH_PREFIX):].strip()
        elif not line:
            flush()
            cmd = None
            path = None

    flush()
    return items


def parse_zsh_history(lines):
    """Parse zsh history, stripping extended-history `: <ts>:<elapsed>;` prefixes"""
    items = []
    for line in lines:
        cmd = line.lstrip(ZSH_METADATA_CHARS).strip()
        if cmd:
            items.append(HistoryItem(cmd))
    return items


def parse_plain_history(lines):
    """Parse one-command-per-line history such as bash's"""
    items = []
    for line in lines:
        cmd = line.strip()
        if cmd:
            items.append(HistoryItem(cmd))
    return items


def load_history(shell, home=None):
    """Load and parse the history file for a shell; empty list on any failure"""
    path = history_path(shell, home)
    if path is None:
        logger.warning(f"No history file known for shell '{shell}'")
        return []

    if not os.path.exists(path):
        logger.warning(f"History file {path} does not exist")
        return []

    lines = read_history_lines(path)
    if shell == 'fish':
        items = parse_fish_history(lines)
    elif shell == 'zsh':
        items = parse_zsh_history(lines)
    else:
        items = parse_plain_history(lines)

    logger.debug(f"Loaded {len(items)} commands from {path}")
    return items


def is_cd(cmd):
    return cmd.startswith(CD_PREFIX)


def directory_key(path):
    """Last component of a path, ignoring trailing separators"""
    return os.path.basename(path.rstrip(os.sep))


def build_directory_index(history):
    """Map each directory name to the commands run right after a `cd` into it

    Only the command immediately following a `cd` is attributed. A `cd`
    followed by another `cd` attributes nothing to the first directory.
    """
    index = {}
    commands = [item.cmd.strip() for item in history]
    for previous, current in zip(commands, commands[1:]):
        if is_cd(previous) and not is_cd(current):
            key = directory_key(previous[len(CD_PREFIX):].strip())
            if key in NON_DIRECTORY_KEYS:
                continue
            index.setdefault(key, []).append(current)
    return index


def most_common_command(commands):
    """Most frequent command, ties going to the one seen first; None if empty"""
    ranked = Counter(commands).most_common(1)
    if not ranked:
        return None
    return ranked[0][0]


def predict_next_command(history, cwd):
    """Suggest the next command for cwd, or None when there is nothing to suggest"""
    index = build_directory_index(history)
    key = directory_key(cwd)

    if key in index:
        suggestion = most_common_command(index[key])
        logger.debug(f"Suggesting '{suggestion}' from {len(index[key])} commands run in '{key}'")
        return suggestion

    suggestion = most_common_command(
        item.cmd for item in history if not is_cd(item.cmd.strip())
    )
    logger.debug(f"No directory history for '{key}', falling back to global frequency")
    return suggestion


def top_commands(history, limit=TOP_COMMANDS):
    """Most used commands as (command, count) pairs, `cd` lines included"""
    return Counter(item.cmd for item in history).most_common(limit)


def echo(*fragments, file=None):
    """Print (style, text) fragments as one line

    prompt_toolkit writes plain text when the stream is not a terminal.
    """
    if file is None:
        file = sys.stdout
    print_formatted_text(FormattedText(list(fragments)), file=file, flush=True)


def warn(text):
    echo(('ansired', text), file=sys.stderr)


def truncate_command(cmd, width=MAX_COMMAND_WIDTH):
    if len(cmd) > width:
        return cmd[:width - 1] + '…'
    return cmd


def soon_now(shell, home=None, cwd=None):
    history = load_history(shell, home)
    if not history:
        warn(f"⚠️ Failed to load history for {shell}.")
        return 1

    if cwd is None:
        try:
            cwd = os.getcwd()
        except OSError as e:
            logger.warning(f"Could not determine current directory: {e}")
            cwd = ''

    suggestion = predict_next_command(history, cwd)
    echo()
    echo(('ansimagenta bold', "🔮 You might run next:"))
    if suggestion is not None:
        echo(('ansigreen bold', f"👉 {suggestion}"))
    else:
        echo(('ansiyellow', "No suggestion found."))
    return 0


def soon_stats(shell, home=None, limit=TOP_COMMANDS):
    history = load_history(shell, home)
    if not history:
        warn(f"⚠️ Failed to load history for {shell}.")
        return 1

    echo(('ansicyan bold', f"📊 Top {limit} most used commands"))
    echo(('ansicyan bold', f"{'#':<3} {'Command':<40} "), ('ansimagenta bold', "Usage Count"))
    for i, (cmd, count) in enumerate(top_commands(history, limit), start=1):
        echo(('', f"{i:<3} {truncate_command(cmd):<40} {count}"))
    return 0


def soon_learn(shell):
    echo(('ansiyellow', "🧠 [soon learn] feature under development..."))
    return 0


def soon_which(shell):
    echo(('ansiyellow bold', f"🕵️ Current shell: {shell}"))
    return 0


def soon_version():
    echo(('ansicyan bold', f"soon version {__version__}"))
    return 0


def soon_update():
    echo(('ansiyellow', "🔄 [soon update] feature under development..."))
    return 0


def positive_int(value):
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid int value: '{value}'")
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {number}")
    return number


def build_parser():
    parser = argparse.ArgumentParser(prog='soon', description='Predict your next shell command based on history')
    parser.add_argument('--shell', metavar='NAME', help='Shell to read history for (default: detect from $SHELL)')
    parser.add_argument('--debug', action='store_true', help='Enable debug logging')

    subparsers = parser.add_subparsers(dest='command', metavar='COMMAND')
    subparsers.add_parser('now', help='Show the most likely next command')
    stats = subparsers.add_parser('stats', help='Show most used commands')
    stats.add_argument('--limit', '-n', type=positive_int, default=TOP_COMMANDS, metavar='N', help='Number of commands to show (default: 10)')
    subparsers.add_parser('learn', help='Train prediction (WIP)')
    subparsers.add_parser('which', help='Display detected current shell')
    subparsers.add_parser('version', help='Show version information')
    subparsers.add_parser('update', help='Update self (WIP)')
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(args.debug)

    shell = detect_shell(args.shell)
    command = args.command or 'now'
    logger.debug(f"Running '{command}' for shell '{shell}'")

    if shell == UNKNOWN_SHELL and command != 'which':
        warn("⚠️ Unknown shell. Please specify with --shell.")
        return 1

    if command == 'now':
        return soon_now(shell)
    elif command == 'stats':
        return soon_stats(shell, limit=args.limit)
    elif command == 'learn':
        return soon_learn(shell)
    elif command == 'which':
        return soon_which(shell)
    elif command == 'version':
        return soon_version()
    else:
        return soon_update()


if __name__ == "__main__":
    sys.exit(main())
