from __future__ import annotations

import logging
from collections.abc import Iterable

from swarmgate.graph import normalize_paths
from swarmgate.workspace import GitWorkspace

logger = logging.getLogger("swarmgate.revert")


class RevertController:
    """The only component that rolls the workspace back to its known-good point.

    With nothing protected every tracked change is restored and every untracked
    addition deleted. Protected paths (the write-sets of other running tasks)
    are left alone, so a rejected attempt does not destroy a neighbour's work.
    Reverting an already clean workspace is a no-op.
    """

    def __init__(self, workspace: GitWorkspace) -> None:
        self.workspace = workspace

    def revert(self, protected: Iterable[str] = ()) -> list[str]:
        keep = normalize_paths(protected)
        if not keep:
            reverted = self.workspace.revert()
        else:
            targets = sorted(self.workspace.changed_files(exclude=keep))
            reverted = self.workspace.revert(targets) if targets else []
        if reverted:
            logger.info("Reverted: %s", ", ".join(reverted))
        else:
            logger.debug("Nothing to revert in %s", self.workspace.root)
        return reverted
