"""
Suite registry and access control.

Hidden suites live in a store that fetched workspaces can never reach.
Which suites a caller may request is decided here, not by the runner.
"""

import logging
from enum import Enum
from pathlib import Path

from .config_loader import SuiteConfig
from .errors import SuiteAccessError
from .models import SuiteVisibility, TestSuiteSpec

logger = logging.getLogger(__name__)


class AccessRole(str, Enum):
    """Who is asking for suites."""

    STUDENT = "student"
    GRADER = "grader"


def _is_within(path: Path, parent: Path) -> bool:
    try:
        path.resolve().relative_to(parent.resolve())
        return True
    except ValueError:
        return False


class SuiteRegistry:
    """
    Holds the suites of one assignment and decides who may run them.
    """

    def __init__(self, suites: list[TestSuiteSpec], visible_store: Path, hidden_store: Path) -> None:
        """
        Initialize the registry.

        Args:
            suites: Suites in execution order.
            visible_store: Directory all visible suites must live under.
            hidden_store: Directory all hidden suites must live under.

        Raises:
            SuiteAccessError: If a suite lives outside its store, the stores
                overlap, or two suites share a name.
        """
        self.visible_store = visible_store
        self.hidden_store = hidden_store

        if _is_within(visible_store, hidden_store) or _is_within(hidden_store, visible_store):
            raise SuiteAccessError(
                f"Visible store {visible_store} and hidden store {hidden_store} must not overlap"
            )

        names = [s.name for s in suites]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise SuiteAccessError(f"Duplicate suite names: {', '.join(duplicates)}")

        for suite in suites:
            store = hidden_store if suite.visibility is SuiteVisibility.HIDDEN else visible_store
            if not _is_within(suite.path, store):
                raise SuiteAccessError(
                    f"Suite '{suite.name}' ({suite.visibility.value}) is outside its store {store}"
                )
        self._suites = list(suites)

    @classmethod
    def from_config(
        cls, suites: list[SuiteConfig], visible_store: Path, hidden_store: Path
    ) -> "SuiteRegistry":
        specs = []
        for suite in suites:
            store = hidden_store if suite.visibility is SuiteVisibility.HIDDEN else visible_store
            path = suite.path if suite.path.is_absolute() else store / suite.path
            specs.append(TestSuiteSpec(**{**suite.model_dump(), "path": path}))
        return cls(specs, visible_store=visible_store, hidden_store=hidden_store)

    def suites_for(
        self, role: AccessRole, visibility: SuiteVisibility | None = None
    ) -> list[TestSuiteSpec]:
        """
        Return the suites a caller may run.

        Args:
            role: The caller's role.
            visibility: Restrict to one visibility; None means every permitted suite.

        Raises:
            SuiteAccessError: If a student asks for hidden suites.
        """
        if role is AccessRole.STUDENT:
            if visibility is SuiteVisibility.HIDDEN:
                raise SuiteAccessError("Hidden suites are not available to students")
            visibility = SuiteVisibility.VISIBLE
        if visibility is None:
            return list(self._suites)
        return [s for s in self._suites if s.visibility is visibility]

    def ensure_isolated(self, workspace_root: Path) -> None:
        """
        Check that fetched workspaces cannot overlap the hidden store.

        Raises:
            SuiteAccessError: If the workspace root and the hidden store overlap.
        """
        if _is_within(workspace_root, self.hidden_store) or _is_within(self.hidden_store, workspace_root):
            raise SuiteAccessError(
                f"Workspace root {workspace_root} overlaps the hidden suite store {self.hidden_store}"
            )
        logger.debug("Workspace root %s is isolated from %s", workspace_root, self.hidden_store)
