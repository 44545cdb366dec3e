"""
RF2 Snapshot Caches

Read-only in-memory indexes over two UK Primary Care RF2 snapshot files:
- Simple refset membership: refset id -> active member concept ids
- Descriptions: concept id -> preferred term (FSN over synonym)

Each index is built by one full scan of its file the first time it is read and is never
rebuilt afterwards. Instances are independent so tests can build isolated ones;
get_rf2_caches() returns the process-wide pair used by default.
"""

import csv
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple, Union

import pandas as pd

from ..system.debug_output import emit_debug
from ..system.error_handling import ErrorHandler, RF2FileError, create_error_context
from ..system.settings import (
    ExpanderSettings,
    RF2_DESCRIPTION_FILE,
    RF2_REFSET_FILE,
    RF2_RELEASE_DIR,
)

logger = logging.getLogger(__name__)

FSN_TYPE_ID = "900000000000003001"
SYNONYM_TYPE_ID = "900000000000013009"

_CHUNK_SIZE = 200_000

PathLike = Union[str, Path]


def resolve_rf2_path(configured: Optional[PathLike], relative_file: str) -> Path:
    """Configured path wins; otherwise look for the release under the cwd, then src/data."""
    if configured:
        return Path(configured)

    candidates = [
        Path.cwd() / RF2_RELEASE_DIR / relative_file,
        Path.cwd() / "src" / "data" / RF2_RELEASE_DIR / relative_file,
    ]
    for candidate in candidates:
        if candidate.exists():
            return candidate
    return candidates[0]


def _read_rf2_chunks(path: Path, columns: List[int], names: List[str]) -> Iterable[pd.DataFrame]:
    """Stream an RF2 file as string-typed chunks restricted to the given column positions."""
    reader = pd.read_csv(
        path,
        sep="\t",
        header=0,
        usecols=columns,
        dtype=str,
        quoting=csv.QUOTE_NONE,
        keep_default_na=False,
        na_filter=False,
        on_bad_lines="skip",
        encoding="utf-8",
        chunksize=_CHUNK_SIZE,
    )
    for chunk in reader:
        chunk.columns = names
        yield chunk.fillna("")


class _LazyRF2Index:
    """Build-once index guarded by a lock; reads after the build take no lock."""

    kind = "RF2"

    def __init__(self, file_path: Optional[PathLike] = None):
        self.file_path = Path(file_path) if file_path else None
        self._index: Optional[Dict] = None
        self._lock = threading.Lock()

    @property
    def is_loaded(self) -> bool:
        return self._index is not None

    def _get_index(self) -> Dict:
        index = self._index
        if index is not None:
            return index

        with self._lock:
            if self._index is None:
                self._index = self._load()
            return self._index

    def _load(self) -> Dict:
        path = self.file_path
        if path is None or not path.exists():
            logger.warning(f"{self.kind} file not found at {path}; continuing with an empty index")
            return {}

        emit_debug("rf2_cache", f"Building {self.kind} index from {path}")
        partial: Dict = {}
        try:
            self._scan(path, partial)
        except pd.errors.EmptyDataError:
            logger.warning(f"{self.kind} file {path} is empty")
        except (pd.errors.ParserError, UnicodeDecodeError, OSError, ValueError) as e:
            error = RF2FileError(
                f"Failed to read {self.kind} file: {e}",
                file_path=str(path),
                context=create_error_context("rf2_scan", file_path=str(path)),
                original_exception=e,
            )
            ErrorHandler(__name__).handle_error(error)

        index = self._finalise(partial)
        logger.info(f"Loaded {self.kind} index with {len(index)} entries from {path.name}")
        return index

    def _scan(self, path: Path, target: Dict) -> None:
        raise NotImplementedError

    def _finalise(self, partial: Dict) -> Dict:
        return partial

    def clear(self) -> None:
        """Drop the built index so the next read rebuilds it. Intended for tests."""
        with self._lock:
            self._index = None


class Rf2RefsetIndex(_LazyRF2Index):
    """Refset id -> ordered tuple of active member concept ids."""

    kind = "RF2 refset"

    @classmethod
    def from_members(cls, members: Dict[str, Iterable[str]]) -> "Rf2RefsetIndex":
        """Pre-built index, skipping the file scan entirely."""
        instance = cls()
        instance._index = {
            refset_id: tuple(dict.fromkeys(member_ids)) for refset_id, member_ids in members.items()
        }
        return instance

    def _scan(self, path: Path, target: Dict) -> None:
        # id, effectiveTime, active, moduleId, refsetId, referencedComponentId
        for chunk in _read_rf2_chunks(path, [2, 4, 5], ["active", "refset_id", "member_id"]):
            active = chunk[
                (chunk["active"].str.strip() == "1")
                & (chunk["refset_id"] != "")
                & (chunk["member_id"] != "")
            ]
            for refset_id, member_id in zip(active["refset_id"].str.strip(), active["member_id"].str.strip()):
                target.setdefault(refset_id, {})[member_id] = None

    def _finalise(self, partial: Dict) -> Dict[str, Tuple[str, ...]]:
        return {refset_id: tuple(members) for refset_id, members in partial.items()}

    def refset_exists(self, refset_id: str) -> bool:
        return len(self._get_index().get(refset_id, ())) > 0

    def members_of(self, refset_id: str) -> List[str]:
        return list(self._get_index().get(refset_id, ()))

    def refset_ids(self) -> List[str]:
        return list(self._get_index().keys())

    def get_stats(self) -> Dict[str, int]:
        index = self._get_index()
        return {
            "refset_count": len(index),
            "member_count": sum(len(members) for members in index.values()),
        }


class Rf2DescriptionIndex(_LazyRF2Index):
    """Concept id -> preferred term from active descriptions."""

    kind = "RF2 description"

    @classmethod
    def from_terms(cls, terms: Dict[str, str]) -> "Rf2DescriptionIndex":
        """Pre-built index, skipping the file scan entirely."""
        instance = cls()
        instance._index = dict(terms)
        return instance

    def _scan(self, path: Path, target: Dict) -> None:
        # id, effectiveTime, active, moduleId, conceptId, languageCode, typeId, term, caseSignificanceId
        fsn_concepts = set()
        for chunk in _read_rf2_chunks(path, [2, 4, 6, 7], ["active", "concept_id", "type_id", "term"]):
            active = chunk[(chunk["active"].str.strip() == "1") & (chunk["concept_id"] != "")]
            for concept_id, type_id, term in zip(
                active["concept_id"].str.strip(), active["type_id"].str.strip(), active["term"]
            ):
                if not term:
                    continue
                if type_id == FSN_TYPE_ID:
                    target[concept_id] = term
                    fsn_concepts.add(concept_id)
                elif concept_id not in fsn_concepts:
                    target[concept_id] = term

    def display_name_of(self, concept_id: str) -> Optional[str]:
        return self._get_index().get(concept_id)

    def display_names_of(self, concept_ids: Iterable[str]) -> Dict[str, str]:
        """Terms for the ids that have one; ids without a description are omitted."""
        index = self._get_index()
        return {concept_id: index[concept_id] for concept_id in concept_ids if concept_id in index}

    def get_stats(self) -> Dict[str, int]:
        return {"description_count": len(self._get_index())}


@dataclass
class Rf2Caches:
    """The refset membership and description indexes used together by expansion."""
    refsets: Rf2RefsetIndex
    descriptions: Rf2DescriptionIndex

    @classmethod
    def from_settings(cls, settings: ExpanderSettings) -> "Rf2Caches":
        return cls(
            refsets=Rf2RefsetIndex(resolve_rf2_path(settings.rf2_refset_path, RF2_REFSET_FILE)),
            descriptions=Rf2DescriptionIndex(
                resolve_rf2_path(settings.rf2_description_path, RF2_DESCRIPTION_FILE)
            ),
        )

    @classmethod
    def empty(cls) -> "Rf2Caches":
        return cls(refsets=Rf2RefsetIndex.from_members({}), descriptions=Rf2DescriptionIndex.from_terms({}))

    def refset_display_name(self, refset_id: str) -> str:
        return self.descriptions.display_name_of(refset_id) or f"Refset {refset_id}"

    def clear(self) -> None:
        self.refsets.clear()
        self.descriptions.clear()


_default_caches: Optional[Rf2Caches] = None
_caches_lock = threading.Lock()


def get_rf2_caches(settings: Optional[ExpanderSettings] = None) -> Rf2Caches:
    """Process-wide caches; file paths come from the settings of the first caller."""
    global _default_caches
    with _caches_lock:
        if _default_caches is None:
            _default_caches = Rf2Caches.from_settings(settings or ExpanderSettings())
        return _default_caches


def reset_rf2_caches() -> None:
    """Forget the process-wide caches. Intended for tests."""
    global _default_caches
    with _caches_lock:
        _default_caches = None
