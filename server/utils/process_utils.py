"""
Process Utilities
=================

Two-stage termination of an agent process and everything it spawned.
"""

import logging
from dataclasses import dataclass
from typing import Literal

import psutil

logger = logging.getLogger(__name__)


@dataclass
class KillResult:
    """Outcome of ``kill_process_tree``."""

    status: Literal["success", "partial", "failure", "not_found"]
    parent_pid: int
    children_found: int = 0
    children_terminated: int = 0
    children_killed: int = 0
    parent_forcekilled: bool = False


def kill_process_tree(pid: int, timeout: float = 5.0) -> KillResult:
    """Terminate a process and all of its descendants.

    Sends SIGTERM to every process of the tree, waits up to ``timeout``
    seconds, then SIGKILLs whatever is still alive. Blocking; run it in an
    executor from async code.

    Args:
        pid: Root process id
        timeout: Grace period between terminate and kill
    """
    try:
        parent = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return KillResult(status="not_found", parent_pid=pid)

    try:
        children = parent.children(recursive=True)
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        children = []

    result = KillResult(status="success", parent_pid=pid, children_found=len(children))
    tree = children + [parent]

    for proc in tree:
        try:
            proc.terminate()
        except psutil.NoSuchProcess:
            pass
        except psutil.AccessDenied as e:
            logger.warning("Access denied terminating process %d: %s", proc.pid, e)
            result.status = "failure"

    _, alive = psutil.wait_procs(tree, timeout=timeout)
    result.children_terminated = sum(1 for c in children if c not in alive)

    for proc in alive:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            continue
        except psutil.AccessDenied as e:
            logger.warning("Access denied killing process %d: %s", proc.pid, e)
            result.status = "failure"
            continue
        if proc.pid == pid:
            result.parent_forcekilled = True
        else:
            result.children_killed += 1

    if alive:
        psutil.wait_procs(alive, timeout=1.0)

    if result.status == "success" and (result.children_killed or result.parent_forcekilled):
        result.status = "partial"

    logger.debug(
        "Killed process tree %d: children=%d terminated=%d killed=%d forcekilled=%s",
        pid, result.children_found, result.children_terminated,
        result.children_killed, result.parent_forcekilled,
    )
    return result
