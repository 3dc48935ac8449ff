"""
Tracks stateful tool sessions (code execution) across the calls of one run.
"""
import time
from typing import Any, Dict, List, Optional

from agent_graph.common.enums import EXECUTE_CODE
from agent_graph.state.graph_state import SessionFile, ToolSessionState


class ToolSessions:
    """Latest session handle and file list per tool identity"""

    def __init__(self):
        self._sessions: Dict[str, ToolSessionState] = {}

    def get(self, key: str = EXECUTE_CODE) -> Optional[ToolSessionState]:
        return self._sessions.get(key)

    def merge_files(self, session_id: str, files: List[Dict[str, Any]], key: str = EXECUTE_CODE) -> ToolSessionState:
        """
        Record files reported by a completed call.

        Each file is stamped with `session_id`; a file whose name is already
        tracked replaces the older entry.
        """
        stamped: List[SessionFile] = [{**file, "session_id": session_id} for file in files]
        new_names = {file.get("name") for file in stamped}
        existing = self._sessions.get(key)
        kept = [file for file in (existing["files"] if existing else []) if file.get("name") not in new_names]

        session: ToolSessionState = {
            "session_id": session_id,
            "files": [*kept, *stamped],
            "last_updated": time.time(),
        }
        self._sessions[key] = session
        return session

    def file_refs(self, key: str = EXECUTE_CODE) -> Optional[List[SessionFile]]:
        """File references for injection, or None when there is nothing to inject."""
        session = self._sessions.get(key)
        if not session or not session.get("session_id") or not session["files"]:
            return None
        return [
            {"session_id": session["session_id"], "id": file.get("id"), "name": file.get("name")}
            for file in session["files"]
        ]

    def reset(self):
        self._sessions.clear()

    def __len__(self) -> int:
        return len(self._sessions)
