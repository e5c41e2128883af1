#!/usr/bin/env python3

"""
addons_sync.py - Refresh the custom add-ons overlay from a Git branch.

The repository branch is shallow-cloned into a temporary directory first;
the overlay directory is only replaced once the fetch succeeded and produced
content, and the swap itself restores the previous entries when it fails, so
a failed sync never leaves a half-emptied overlay behind.

History:
    2025-03-02: Initial creation
"""

import os
import shutil
import signal
import subprocess
import sys
import tempfile
from types import FrameType
from typing import Dict, List, Optional

from tools.src.errors import AddonsSyncError

DEFAULT_OVERLAY_DIR = '/mnt/extra-addons'
GIT_TIMEOUT_SECONDS = 300
SKIPPED_ENTRIES = {'.git'}


def run_git(command: List[str], env: Optional[Dict[str, str]] = None) -> None:
    """Run a git command and raise AddonsSyncError if it fails.

    Args:
        command: List of command arguments to execute.
        env: Optional environment variables to pass to the command.

    Raises:
        AddonsSyncError: If the command fails, times out or git is missing.
    """
    try:
        subprocess.run(
            command, check=True, capture_output=True, text=True, env=env,
            timeout=GIT_TIMEOUT_SECONDS,
        )
    except subprocess.CalledProcessError as err:
        raise AddonsSyncError(f'git failed: {(err.stderr or "").strip()}', cause=err) from err
    except subprocess.TimeoutExpired as err:
        raise AddonsSyncError(f'git timed out after {GIT_TIMEOUT_SECONDS}s', cause=err) from err
    except FileNotFoundError as err:
        raise AddonsSyncError('git executable not found', cause=err) from err


def clone_branch(url: str, branch: str, dest: str, token: Optional[str] = None) -> None:
    """Shallow-clone a single branch of a Git repository into *dest*.

    Args:
        url: The repository URL to clone.
        branch: The branch to clone.
        dest: The destination directory for the clone.
        token: Optional token for private repositories.

    Raises:
        AddonsSyncError: If the git clone command fails.
    """
    print(f'Cloning {url} branch {branch} into {dest}', file=sys.stderr)
    git_command: List[str] = [
        'git', 'clone', '--depth', '1', '--single-branch', '--branch', branch, url, dest,
    ]

    git_env: Dict[str, str] = os.environ.copy()
    git_env['GIT_TERMINAL_PROMPT'] = '0'
    askpass_script: Optional[str] = None

    if not token:
        run_git(git_command, env=git_env)
        return

    try:
        # The token travels through the environment, never on the command line.
        with tempfile.NamedTemporaryFile(mode='w', delete=False, prefix='git_askpass_', suffix='.sh') as tf:
            tf.write('#!/bin/sh\n')
            tf.write('echo "$CUSTOM_ADDONS_GIT_TOKEN"\n')
            askpass_script = tf.name
        os.chmod(askpass_script, 0o700)
        git_env['GIT_ASKPASS'] = askpass_script
        git_env['CUSTOM_ADDONS_GIT_TOKEN'] = token
        run_git(git_command, env=git_env)
    finally:
        if askpass_script and os.path.exists(askpass_script):
            os.remove(askpass_script)


def list_content(path: str) -> List[str]:
    """Return the entries of *path* that belong in the overlay."""
    return sorted(entry for entry in os.listdir(path) if entry not in SKIPPED_ENTRIES)


def remove_entry(path: str) -> None:
    """Remove a file, symlink or directory tree.

    Args:
        path: The entry to remove.
    """
    if os.path.isdir(path) and not os.path.islink(path):
        shutil.rmtree(path)
    else:
        os.remove(path)


def copy_entries(src_dir: str, dest_dir: str, entries: List[str]) -> None:
    """Copy *entries* of *src_dir* into *dest_dir*, keeping symlinks as links."""
    for item in entries:
        source_item = os.path.join(src_dir, item)
        dest_item = os.path.join(dest_dir, item)
        if os.path.isdir(source_item) and not os.path.islink(source_item):
            shutil.copytree(source_item, dest_item, symlinks=True)
        else:
            shutil.copy2(source_item, dest_item, follow_symlinks=False)


def move_entries(src_dir: str, dest_dir: str, entries: List[str]) -> None:
    """Rename *entries* of *src_dir* into *dest_dir* (same filesystem)."""
    for item in entries:
        os.rename(os.path.join(src_dir, item), os.path.join(dest_dir, item))


def replace_overlay(src_dir: str, target_dir: str) -> List[str]:
    """Replace the overlay at *target_dir* with the content of *src_dir*.

    The new content is copied into a staging directory inside *target_dir*
    while the previous entries stay in place.  Only then are the previous
    entries renamed aside and the staged ones renamed in; if any rename
    fails the previous entries are put back before the error propagates.

    Returns:
        The copied entry names.
    """
    os.makedirs(target_dir, exist_ok=True)
    entries = list_content(src_dir)
    incoming = tempfile.mkdtemp(prefix='.incoming-', dir=target_dir)
    previous = tempfile.mkdtemp(prefix='.previous-', dir=target_dir)
    staging = {os.path.basename(incoming), os.path.basename(previous)}
    try:
        copy_entries(src_dir, incoming, entries)

        old_entries = sorted(e for e in os.listdir(target_dir) if e not in staging)
        try:
            move_entries(target_dir, previous, old_entries)
            move_entries(incoming, target_dir, entries)
        except OSError:
            for item in entries:
                if not os.path.lexists(os.path.join(incoming, item)):
                    remove_entry(os.path.join(target_dir, item))
            move_entries(previous, target_dir, sorted(os.listdir(previous)))
            raise
    finally:
        shutil.rmtree(incoming, ignore_errors=True)
        shutil.rmtree(previous, ignore_errors=True)
    return entries


def sync_addons(
    repo: str,
    branch: str,
    target_dir: str = DEFAULT_OVERLAY_DIR,
    token: Optional[str] = None,
) -> List[str]:
    """Fetch *branch* of *repo* and make it the overlay at *target_dir*.

    An empty *repo* leaves the overlay untouched and performs no network I/O.

    Returns:
        The entries now present in the overlay (empty when skipped).

    Raises:
        AddonsSyncError: If the fetch fails or the branch has no content.
    """
    if not repo:
        print('No custom addons repository specified', file=sys.stderr)
        return []

    print(f'Syncing custom addons from {repo} (branch: {branch})...', file=sys.stderr)
    temp_dir = tempfile.mkdtemp(prefix='custom-addons-')
    try:
        checkout = os.path.join(temp_dir, 'checkout')
        clone_branch(repo, branch, checkout, token=token)
        if not os.path.isdir(checkout) or not list_content(checkout):
            raise AddonsSyncError(f'Custom addons repository {repo} branch {branch} is empty or invalid')
        try:
            entries = replace_overlay(checkout, target_dir)
        except OSError as err:
            raise AddonsSyncError(f'Could not update overlay {target_dir}: {err}', cause=err) from err
    finally:
        shutil.rmtree(temp_dir, ignore_errors=True)

    print(f'Custom addons synced successfully ({len(entries)} entries)', file=sys.stderr)
    return entries


def signal_handler(signum: int, frame: Optional[FrameType]) -> None:
    """Handle received signals.

    Args:
        signum (int): The signal number received.
        frame (Optional[FrameType]): The current stack frame.
    """
    print(f'Received signal {signum}, exiting.', file=sys.stderr)
    sys.exit(1)


def main() -> None:
    """Sync the overlay using the bootstrap environment variables."""
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        sync_addons(
            os.getenv('CUSTOM_ADDONS_REPO', ''),
            os.getenv('CUSTOM_ADDONS_BRANCH', 'main'),
            os.getenv('CUSTOM_ADDONS_DIR', DEFAULT_OVERLAY_DIR),
            token=os.getenv('GITHUB_TOKEN') or None,
        )
    except AddonsSyncError as error:
        print(f'Error: {error}', file=sys.stderr)
        sys.exit(1)


if __name__ == '__main__':
    main()
