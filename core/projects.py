"""Project path resolution for steps that run inside a project."""

from __future__ import annotations

from pathlib import Path


class ProjectResolver:
    """Map a task's ``project_id`` to a working directory.

    With a projects root configured the id names a sub-directory of it;
    otherwise the id itself is taken as a path.  Only existing directories
    resolve.
    """

    def __init__(self, projects_root: str | Path | None = None):
        self.projects_root = Path(projects_root).expanduser() if projects_root else None

    def resolve(self, project_id: str | None) -> Path | None:
        if not project_id:
            return None
        if self.projects_root is not None:
            candidate = self.projects_root / project_id
        else:
            candidate = Path(project_id).expanduser()
        return candidate if candidate.is_dir() else None
