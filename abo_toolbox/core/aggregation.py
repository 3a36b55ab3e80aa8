"""
Table assembly primitives for manifest construction.

Pages of remote rows are merged into one table, parent tables are joined
onto their children, and cross-table columns are derived with two
aggregations: count_owned (number of child rows per parent) and
grouped_uniques (distinct child values per parent).
"""

from typing import Dict, FrozenSet, List, Optional, Sequence
import pandas as pd

from ..models.schemas import is_missing_value, missing_mask


def merge_pages(pages: Sequence[List[dict]]) -> pd.DataFrame:
    """
    Concatenate pages of row dictionaries into one table.

    Pages may disagree on which fields they carry. Fields absent from a page
    are filled with None before concatenation, so rows never shift columns.

    Args:
        pages: List of pages, each a list of row dicts

    Returns:
        pd.DataFrame with the union of all fields, columns in first-seen order

    Example:
        >>> merge_pages([[{'id': 1}], [{'id': 2, 'name': 'probeA'}]])
           id   name
        0   1   None
        1   2  probeA
    """
    columns: Dict[str, None] = {}
    for page in pages:
        for row in page:
            for col in row:
                columns.setdefault(col, None)

    frames = []
    for page in pages:
        if len(page) == 0:
            continue
        frame = pd.DataFrame.from_records(page)
        for col in columns:
            if col not in frame.columns:
                frame[col] = None
        frames.append(frame[list(columns)])

    if not frames:
        return pd.DataFrame(columns=list(columns))
    return pd.concat(frames, ignore_index=True)


def count_owned(parent: pd.DataFrame,
                child: pd.DataFrame,
                parent_key: str,
                child_fk: str,
                new_col: str) -> pd.DataFrame:
    """
    Count the child rows owned by every parent row.

    A parent with no children gets 0. A parent whose own key is missing
    gets <NA>, since it cannot own anything.

    Args:
        parent: Parent table
        child: Child table
        parent_key: Key column in parent
        child_fk: Foreign key column in child referring to parent_key
        new_col: Name of the count column added to parent

    Returns:
        Copy of parent with new_col (nullable UInt64)
    """
    fk = child[child_fk]
    counts = fk[~missing_mask(fk)].value_counts()

    keys = parent[parent_key]
    present = ~missing_mask(keys)
    result = parent.copy()
    column = pd.Series(pd.NA, index=parent.index, dtype='UInt64')
    if present.any():
        matched = keys[present].map(lambda key: counts.get(key, 0))
        column[present] = matched.astype('int64')
    result[new_col] = column
    return result


def grouped_uniques(parent: pd.DataFrame,
                    child: pd.DataFrame,
                    parent_key: str,
                    child_fk: str,
                    child_col: str,
                    new_col: str) -> pd.DataFrame:
    """
    Collect the distinct child values owned by every parent row.

    Missing markers are excluded unless every matched value is missing, in
    which case the set is {None}. A parent with no children gets an empty
    set, and a parent whose own key is missing gets None.

    Args:
        parent: Parent table
        child: Child table
        parent_key: Key column in parent
        child_fk: Foreign key column in child referring to parent_key
        child_col: Child column whose values are collected
        new_col: Name of the set-valued column added to parent

    Returns:
        Copy of parent with new_col holding frozensets
    """
    groups: Dict[object, List[object]] = {}
    for fk, value in zip(child[child_fk], child[child_col]):
        if is_missing_value(fk):
            continue
        groups.setdefault(fk, []).append(value)

    def _summarize(values: List[object]) -> FrozenSet[object]:
        present = frozenset(v for v in values if not is_missing_value(v))
        return present if present else frozenset([None])

    column = []
    for key in parent[parent_key]:
        if is_missing_value(key):
            column.append(None)
        elif key in groups:
            column.append(_summarize(groups[key]))
        else:
            column.append(frozenset())

    result = parent.copy()
    result[new_col] = pd.Series(column, index=parent.index, dtype=object)
    return result


def join_parent(child: pd.DataFrame,
                parent: pd.DataFrame,
                child_fk: str,
                parent_key: str = 'id',
                suffix: str = '_parent') -> pd.DataFrame:
    """
    Inner-join parent columns onto each child row.

    Children whose foreign key does not resolve are dropped. Parent columns
    that clash with child columns get the suffix.

    Args:
        child: Child table
        parent: Parent table
        child_fk: Foreign key column in child
        parent_key: Key column in parent (not copied onto the child)
        suffix: Suffix for clashing parent columns

    Returns:
        Joined table in child order with a fresh RangeIndex
    """
    right = parent.set_index(parent_key)
    clashing = [col for col in right.columns if col in child.columns and col + suffix in child.columns]
    right = right.drop(columns=clashing)
    joined = child.join(right, on=child_fk, how='inner', rsuffix=suffix)
    return joined.reset_index(drop=True)


def rename_columns(table: pd.DataFrame, mapping: Dict[str, str]) -> pd.DataFrame:
    """Rename the columns of mapping that are present in table."""
    return table.rename(columns={old: new for old, new in mapping.items() if old in table.columns})


def drop_failed(table: pd.DataFrame, column: str = 'failed') -> pd.DataFrame:
    """
    Drop rows flagged as failed.

    Args:
        table: Table with an optional boolean failed column
        column: Name of the flag column

    Returns:
        Rows whose flag is not True, with a fresh RangeIndex
    """
    if column not in table.columns:
        return table
    flags = table[column].map(lambda v: (not is_missing_value(v)) and bool(v)).astype(bool)
    return table[~flags].reset_index(drop=True)


def keep_owned(child: pd.DataFrame, parent: pd.DataFrame, child_fk: str,
               parent_key: str = 'id') -> pd.DataFrame:
    """Keep child rows whose foreign key resolves into parent."""
    owned = child[child_fk].isin(set(parent[parent_key].dropna().tolist()))
    return child[owned.fillna(False).astype(bool)].reset_index(drop=True)


def explode_sets(table: pd.DataFrame, column: str, missing_label: Optional[str] = None) -> pd.DataFrame:
    """
    One row per element of a set-valued column.

    Empty sets become a single row with missing_label.
    """
    def _as_list(value):
        if isinstance(value, (set, frozenset, list, tuple)):
            items = sorted(value, key=lambda v: (v is None, str(v)))
            return items if items else [missing_label]
        return [value]

    exploded = table.copy()
    exploded[column] = exploded[column].map(_as_list)
    return exploded.explode(column).reset_index(drop=True)
