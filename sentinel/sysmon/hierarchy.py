"""
Hierarchy Resolver - parent/child tree of the live process set

The tree is rebuilt from scratch on every call. Processes whose parent is not
live hang off a single synthetic root.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from sentinel.sysmon.models import ProcessRecord, RiskLevel

logger = logging.getLogger(__name__)

ROOT_PID = 0
ROOT_NAME = "Kernel Root"


@dataclass
class TreeNode:
    pid: int
    name: str
    risk_level: RiskLevel = RiskLevel.SAFE
    user: str = ""
    children: List["TreeNode"] = field(default_factory=list)
    synthetic: bool = False

    def walk(self, depth: int = 0) -> Iterator[Tuple[int, "TreeNode"]]:
        """Pre-order traversal yielding (depth, node)."""
        stack = [(depth, self)]
        while stack:
            level, node = stack.pop()
            yield level, node
            for child in reversed(node.children):
                stack.append((level + 1, child))

    def find(self, pid: int) -> Optional["TreeNode"]:
        for _, node in self.walk():
            if node.pid == pid:
                return node
        return None

    def __len__(self) -> int:
        return sum(1 for _ in self.walk())


@dataclass
class HierarchyResult:
    root: TreeNode
    diagnostics: List[str] = field(default_factory=list)

    def parent_of(self, pid: int) -> Optional[int]:
        for _, node in self.root.walk():
            if any(child.pid == pid for child in node.children):
                return node.pid
        return None


class HierarchyResolver:
    """Builds a TreeNode hierarchy from a flat process set."""

    def __init__(self, root_pid: int = ROOT_PID, root_name: str = ROOT_NAME):
        self.root_pid = root_pid
        self.root_name = root_name

    def resolve(self, processes: Iterable[ProcessRecord]) -> HierarchyResult:
        diagnostics: List[str] = []
        records: Dict[int, ProcessRecord] = {}

        for proc in processes:
            if proc.pid == self.root_pid:
                self._reject(diagnostics, f"PID {proc.pid} ({proc.name}) collides with the synthetic root, excluded")
                continue
            if proc.pid == proc.parent_pid:
                self._reject(diagnostics, f"PID {proc.pid} ({proc.name}) is its own parent, excluded")
                continue
            if proc.pid in records:
                self._reject(diagnostics, f"Duplicate PID {proc.pid} ({proc.name}), excluded")
                continue
            records[proc.pid] = proc

        root = TreeNode(pid=self.root_pid, name=self.root_name, user="SYSTEM", synthetic=True)
        nodes: Dict[int, TreeNode] = {
            pid: TreeNode(pid=pid, name=proc.name, risk_level=proc.risk_level, user=proc.user)
            for pid, proc in records.items()
        }

        for pid, proc in records.items():
            parent = nodes.get(proc.parent_pid, root)
            parent.children.append(nodes[pid])

        # anything not reachable from the root sits on a parent cycle
        reachable = {node.pid for _, node in root.walk() if not node.synthetic}
        for pid in records:
            if pid not in reachable:
                self._reject(diagnostics, f"PID {pid} ({records[pid].name}) is part of a parent cycle, excluded")

        return HierarchyResult(root=root, diagnostics=diagnostics)

    @staticmethod
    def _reject(diagnostics: List[str], message: str) -> None:
        logger.warning(f"Hierarchy data error: {message}")
        diagnostics.append(message)
