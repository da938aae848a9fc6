# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Local index of layer cache keys from previous builds.
Lets a plan be compared against what the builder has most likely cached.
"""

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple

from ..RUNNERS.cache_planner import BuildPlan, PlannedStep
from ..UTILS.log_config import get_logger

logger = get_logger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class LayerCacheIndex:
    """
    Records the step keys of built plans, per image tag.

    Keys are content-addressed, so a step is considered cached when any
    recorded plan produced the same key. The index is advisory only: a
    missing or unreadable index behaves like a cold cache.
    """

    def __init__(self, cache_dir: Optional[str] = None):
        """
        Initialize the index.

        Args:
            cache_dir: Directory for the index. Defaults to ~/.p2i/cache
        """
        if cache_dir:
            self.cache_dir = Path(cache_dir)
        else:
            self.cache_dir = Path.home() / ".p2i" / "cache"
        self.index_file = self.cache_dir / "index.json"
        self._index = self._load_index()

    def _load_index(self) -> Dict[str, Any]:
        """Load the index from disk."""
        if self.index_file.exists():
            try:
                with open(self.index_file, 'r', encoding='utf-8') as f:
                    data = json.load(f)
                if isinstance(data, dict) and isinstance(data.get("plans"), dict):
                    return data
                logger.warning("Ignoring malformed cache index %s", self.index_file)
            except (json.JSONDecodeError, OSError) as e:
                logger.warning("Ignoring unreadable cache index %s: %s", self.index_file, e)
        return {"plans": {}}

    def _save_index(self) -> None:
        """Save the index to disk."""
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        tmp = self.index_file.with_suffix(".tmp")
        with open(tmp, 'w', encoding='utf-8') as f:
            json.dump(self._index, f, indent=2)
        tmp.replace(self.index_file)

    def known_keys(self, tag: Optional[str] = None) -> Set[str]:
        """Step keys recorded for a tag, or from every recorded plan."""
        if tag is None:
            entries = list(self._index["plans"].values())
        else:
            entries = [self._index["plans"].get(tag) or {}]
        keys = set()
        for entry in entries:
            keys.update(step["key"] for step in entry.get("steps", []))
        return keys

    def get_plan(self, tag: str) -> Optional[BuildPlan]:
        """
        The last plan recorded for a tag.

        Args:
            tag: Image tag

        Returns:
            BuildPlan if recorded, None otherwise
        """
        entry = self._index["plans"].get(tag)
        if not entry:
            return None
        return BuildPlan.from_dict(entry)

    def compare(self, tag: Optional[str], plan: BuildPlan) -> List[Tuple[PlannedStep, bool]]:
        """
        Marks each step of a plan as cached (True) or to be rebuilt (False),
        against the plan recorded for ``tag``, or against every recorded plan
        when ``tag`` is None.

        Once a step misses, every later step of the same stage misses as
        well, since its parent layer is new.
        """
        known = self.known_keys(tag)
        result = []
        missed: Set[str] = set()
        for step in plan.steps:
            cached = step.stage not in missed and step.key in known
            if not cached:
                missed.add(step.stage)
            result.append((step, cached))
        return result

    def record(self, tag: str, plan: BuildPlan) -> None:
        """
        Record a built plan under a tag, replacing the previous one.
        """
        entry = plan.to_dict()
        entry["recorded_at"] = _now()
        self._index["plans"][tag] = entry
        self._save_index()
        logger.debug("Recorded %d step keys for %s", len(plan.steps), tag)

    def forget(self, tag: str) -> bool:
        """
        Remove a tag from the index.

        Returns:
            True if removed, False if not found
        """
        if tag in self._index["plans"]:
            del self._index["plans"][tag]
            self._save_index()
            return True
        return False

    def tags(self) -> List[str]:
        return sorted(self._index["plans"])

    def prune(self, max_age_days: int) -> int:
        """
        Drop plans recorded more than ``max_age_days`` ago.

        Returns:
            Number of plans removed
        """
        cutoff = datetime.now(timezone.utc) - timedelta(days=max_age_days)
        removed = 0
        for tag, entry in list(self._index["plans"].items()):
            recorded_at = entry.get("recorded_at", "")
            try:
                recorded = datetime.fromisoformat(recorded_at.replace("Z", "+00:00"))
            except ValueError:
                recorded = None
            if recorded is None or recorded < cutoff:
                del self._index["plans"][tag]
                removed += 1
        if removed:
            self._save_index()
        return removed
