"""
Chunking and reassembly of oversized text payloads.

chunk() splits a string into contiguous slices tagged with a shared group
id, a zero-based index and the fixed fragment count. reassemble() turns a
set of stored rows back into logical messages. Concatenating fragment
contents in index order always reproduces the original string.
"""

import dataclasses
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, TypeVar

from chatpipe.errors import MalformedChunkGroup
from chatpipe.metrics import record_chunk_group
from chatpipe.utils import new_id

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 1000
DEFAULT_CHUNK_SIZE = 800


@dataclass(frozen=True)
class ChunkInfo:
    group_id: str
    index: int
    total_chunks: int


@dataclass(frozen=True)
class Fragment:
    content: str
    chunk_info: Optional[ChunkInfo] = None


def chunk(content: str, threshold: int = DEFAULT_THRESHOLD, chunk_size: int = DEFAULT_CHUNK_SIZE,
          group_id: Optional[str] = None) -> List[Fragment]:
    """
    Split content into fragments if it is longer than threshold.

    Args:
        content: Text to split
        threshold: Content of at most this many characters is returned whole
        chunk_size: Maximum characters per fragment
        group_id: Group id to stamp on the fragments (generated when omitted)

    Returns:
        A single untagged Fragment, or the ordered tagged fragments
    """
    if threshold < 1 or chunk_size < 1:
        raise ValueError("threshold and chunk_size must be at least 1")

    if len(content) <= threshold:
        return [Fragment(content=content)]

    group_id = group_id or new_id()
    slices = [content[i:i + chunk_size] for i in range(0, len(content), chunk_size)]
    total = len(slices)
    logger.debug(f"Split {len(content)} characters into {total} fragments (group {group_id})")
    return [
        Fragment(content=piece, chunk_info=ChunkInfo(group_id=group_id, index=i, total_chunks=total))
        for i, piece in enumerate(slices)
    ]


Row = TypeVar("Row")


def reassemble(rows: Sequence[Row]) -> List[Row]:
    """
    Merge complete chunk groups back into logical messages.

    Rows are dataclass instances with `content` and `chunk_info` fields.
    Rows without chunk_info pass through unchanged. A complete group is
    replaced, at the position of its first-seen fragment, by one row built
    from its index-0 fragment with the joined content and chunk_info cleared.
    Partial or malformed groups are surfaced fragment by fragment.
    """
    groups: Dict[str, List[Row]] = {}
    layout: List[tuple] = []

    for row in rows:
        info = row.chunk_info
        if info is None:
            layout.append((row, None))
            continue
        if info.group_id not in groups:
            groups[info.group_id] = []
            layout.append((None, info.group_id))
        groups[info.group_id].append(row)

    result: List[Row] = []
    for row, group_id in layout:
        if group_id is None:
            result.append(row)
        else:
            result.extend(_reassemble_group(group_id, groups[group_id]))
    return result


def _reassemble_group(group_id: str, fragments: List[Row]) -> List[Row]:
    try:
        by_index = _index_fragments(group_id, fragments)
    except MalformedChunkGroup as e:
        logger.warning(f"{e.message}; showing {len(fragments)} raw fragments")
        record_chunk_group("malformed")
        return list(fragments)

    total = fragments[0].chunk_info.total_chunks
    ordered = [by_index[i] for i in sorted(by_index)]

    if len(by_index) < total:
        logger.warning(
            f"Chunk group {group_id} incomplete: {len(by_index)} of {total} fragments present"
        )
        record_chunk_group("partial")
        return ordered

    record_chunk_group("reassembled")
    joined = "".join(fragment.content for fragment in ordered)
    return [dataclasses.replace(ordered[0], content=joined, chunk_info=None)]


def _index_fragments(group_id: str, fragments: List[Row]) -> Dict[int, Row]:
    """Map index -> first-seen fragment, rejecting inconsistent metadata."""
    total = fragments[0].chunk_info.total_chunks
    if total is None or total <= 0:
        raise MalformedChunkGroup(group_id, f"total_chunks is {total}")

    by_index: Dict[int, Row] = {}
    for fragment in fragments:
        info = fragment.chunk_info
        if info.total_chunks != total:
            raise MalformedChunkGroup(group_id, "fragments disagree on total_chunks")
        if info.index is None or not 0 <= info.index < total:
            raise MalformedChunkGroup(group_id, f"index {info.index} out of range")
        # Keep the first fragment seen for an index; later duplicates are dropped
        by_index.setdefault(info.index, fragment)
    return by_index
