"""
Setlists for Region Remote.

A setlist is a named, ordered selection of the project's regions. When one is
selected, autoplay and next/previous follow its order instead of the order
of the regions on the timeline.

Setlists belong to a project and are stored as one JSON file per project
id (`<project id>-setlist.json`), so switching projects in the DAW swaps
the available setlists.

Usage:
    store = SetlistStore(SETLIST_DIR)
    store.load_project("6f1c...")
    setlist = store.create("Friday show")
    store.add_item(setlist.id, region_id=3, name="Opener")
    store.region_order(setlist.id)   # -> (3,)
"""

import json
import uuid
import logging
import threading
from typing import Callable, Dict, List, Optional, Tuple

import sys, os
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
from config import SETLIST_DIR

logger = logging.getLogger("RegionRemote.Setlists")

DEFAULT_SETLIST_NAME = "Setlist"


class SetlistItem:
    """
    One entry of a setlist.

    Attributes:
        id: Unique identifier (the same region may appear twice)
        region_id: DAW region the entry plays
        name: Region name when the entry was added
    """
    def __init__(self, region_id, name=""):
        self.id = str(uuid.uuid4())
        self.region_id = int(region_id)
        self.name = name or ""

    def to_dict(self):
        """Serialize for JSON storage."""
        return {'id': self.id, 'regionId': self.region_id, 'name': self.name}

    @classmethod
    def from_dict(cls, data):
        """Deserialize from JSON storage."""
        item = cls(data['regionId'], name=data.get('name', ''))
        item.id = data.get('id', item.id)
        return item


class Setlist:
    """
    Named, ordered list of SetlistItems.

    Positions are list indices; out-of-range positions are clamped, so
    adding at a huge position appends.
    """
    def __init__(self, name=None, project_id=None):
        self.id = str(uuid.uuid4())
        self.name = name or DEFAULT_SETLIST_NAME
        self.project_id = project_id
        self.items: List[SetlistItem] = []

    def add_item(self, region_id, name="", position=None) -> SetlistItem:
        item = SetlistItem(region_id, name)
        if position is None:
            self.items.append(item)
        else:
            self.items.insert(max(0, min(int(position), len(self.items))), item)
        return item

    def remove_item(self, item_id) -> bool:
        before = len(self.items)
        self.items = [i for i in self.items if i.id != item_id]
        return len(self.items) != before

    def move_item(self, item_id, position) -> bool:
        for index, item in enumerate(self.items):
            if item.id == item_id:
                del self.items[index]
                self.items.insert(max(0, min(int(position), len(self.items))), item)
                return True
        return False

    def region_ids(self) -> Tuple[int, ...]:
        return tuple(i.region_id for i in self.items)

    def to_dict(self):
        """Serialize for JSON storage (and the web API)."""
        return {
            'id': self.id,
            'name': self.name,
            'projectId': self.project_id,
            'items': [i.to_dict() for i in self.items],
        }

    @classmethod
    def from_dict(cls, data):
        """Deserialize from JSON storage."""
        setlist = cls(data.get('name'), project_id=data.get('projectId'))
        setlist.id = data.get('id', setlist.id)
        setlist.items = [SetlistItem.from_dict(i) for i in data.get('items', [])]
        return setlist


class SetlistStore:
    """
    The current project's setlists, persisted as JSON.

    Every method is safe to call from any thread. Mutations save the file
    and then call on_change (if given) with the store.

    Args:
        storage_dir: Directory for the per-project files; None keeps
            setlists in memory only
        on_change: Callback after any successful mutation
    """

    def __init__(self, storage_dir: Optional[str] = SETLIST_DIR,
                 on_change: Optional[Callable] = None):
        self.storage_dir = storage_dir
        self.on_change = on_change
        self.project_id: Optional[str] = None
        self._setlists: Dict[str, Setlist] = {}
        self._lock = threading.Lock()

    # =========================================================================
    # PERSISTENCE
    # =========================================================================

    def path_for(self, project_id: str) -> Optional[str]:
        if self.storage_dir is None:
            return None
        return os.path.join(self.storage_dir, f"{project_id}-setlist.json")

    def load_project(self, project_id: str) -> List[Setlist]:
        """
        Switch to a project's setlists.

        A missing file means no setlists yet. An unreadable file is logged
        and treated the same way; it is only overwritten by the next change.
        """
        setlists = {}
        path = self.path_for(project_id)
        if path is not None and os.path.exists(path):
            try:
                with open(path, 'r') as f:
                    data = json.load(f)
                for entry in data:
                    setlist = Setlist.from_dict(entry)
                    setlists[setlist.id] = setlist
            except (OSError, ValueError, KeyError, TypeError) as e:
                logger.error(f"Error loading setlists from {path}: {e}")
                setlists = {}

        with self._lock:
            self.project_id = project_id
            self._setlists = setlists
        logger.info(f"Loaded {len(setlists)} setlists for project {project_id}")
        self._changed()
        return self.setlists()

    def _save(self) -> None:
        # Caller holds the lock
        if self.project_id is None:
            return
        path = self.path_for(self.project_id)
        if path is None:
            return
        try:
            os.makedirs(self.storage_dir, exist_ok=True)
            with open(path, 'w') as f:
                json.dump([s.to_dict() for s in self._setlists.values()], f, indent=2)
        except OSError as e:
            logger.error(f"Error saving setlists: {e}")

    def _changed(self) -> None:
        if self.on_change is not None:
            self.on_change(self)

    # =========================================================================
    # QUERIES
    # =========================================================================

    def setlists(self) -> List[Setlist]:
        with self._lock:
            return list(self._setlists.values())

    def get(self, setlist_id: str) -> Optional[Setlist]:
        with self._lock:
            return self._setlists.get(setlist_id)

    def region_order(self, setlist_id: Optional[str]) -> Tuple[int, ...]:
        """Region ids of a setlist in play order; empty if it does not exist."""
        with self._lock:
            setlist = self._setlists.get(setlist_id) if setlist_id else None
            return setlist.region_ids() if setlist is not None else ()

    def to_list(self) -> List[dict]:
        with self._lock:
            return [s.to_dict() for s in self._setlists.values()]

    # =========================================================================
    # MUTATIONS
    # =========================================================================

    def create(self, name: Optional[str] = None) -> Setlist:
        with self._lock:
            setlist = Setlist(name, project_id=self.project_id)
            self._setlists[setlist.id] = setlist
            self._save()
        logger.info(f"Created setlist '{setlist.name}'")
        self._changed()
        return setlist

    def rename(self, setlist_id: str, name: str) -> bool:
        with self._lock:
            setlist = self._setlists.get(setlist_id)
            if setlist is None:
                return False
            setlist.name = name or DEFAULT_SETLIST_NAME
            self._save()
        self._changed()
        return True

    def delete(self, setlist_id: str) -> bool:
        with self._lock:
            if self._setlists.pop(setlist_id, None) is None:
                return False
            self._save()
        logger.info(f"Deleted setlist {setlist_id}")
        self._changed()
        return True

    def add_item(self, setlist_id: str, region_id: int, name: str = "",
                 position: Optional[int] = None) -> Optional[SetlistItem]:
        with self._lock:
            setlist = self._setlists.get(setlist_id)
            if setlist is None:
                return None
            item = setlist.add_item(region_id, name, position)
            self._save()
        self._changed()
        return item

    def remove_item(self, setlist_id: str, item_id: str) -> bool:
        with self._lock:
            setlist = self._setlists.get(setlist_id)
            if setlist is None or not setlist.remove_item(item_id):
                return False
            self._save()
        self._changed()
        return True

    def move_item(self, setlist_id: str, item_id: str, position: int) -> bool:
        with self._lock:
            setlist = self._setlists.get(setlist_id)
            if setlist is None or not setlist.move_item(item_id, position):
                return False
            self._save()
        self._changed()
        return True
