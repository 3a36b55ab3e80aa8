"""
Integrity checks for remote query responses and manifest tables.

The manifest store never exposes a partially-populated table: a response
that lacks its row array or row count, or whose pages disagree, fails the
whole build with MalformedResponseError.
"""

from typing import Dict, List, Optional
import pandas as pd

from ..exceptions import MalformedResponseError, UsageError


def validate_rma_page(response, url: str, expected_total: Optional[int] = None) -> int:
    """
    Check one page of an RMA query response.

    Args:
        response: Decoded JSON body
        url: Page URL, for error messages
        expected_total: total_rows declared by the first page, if any

    Returns:
        int: total_rows declared by this page

    Raises:
        MalformedResponseError: If the body is not an RMA response, reports
            failure, lacks 'msg' or 'total_rows', or declares a different
            total than earlier pages
    """
    if not isinstance(response, dict):
        raise MalformedResponseError(f"Expected a JSON object from {url}, got {type(response).__name__}")

    if response.get('success') is False:
        raise MalformedResponseError(f"Query failed: {response.get('msg')} ({url})")

    absent = [field for field in ('msg', 'total_rows') if field not in response]
    if absent:
        raise MalformedResponseError(f"Response from {url} is missing field(s): {absent}")

    if not isinstance(response['msg'], list):
        raise MalformedResponseError(f"Response 'msg' from {url} is not a row array")

    try:
        total_rows = int(response['total_rows'])
    except (TypeError, ValueError):
        raise MalformedResponseError(
            f"Response 'total_rows' from {url} is not an integer: {response['total_rows']!r}"
        ) from None

    if expected_total is not None and total_rows != expected_total:
        raise MalformedResponseError(
            f"Inconsistent row counts across pages: first page declared {expected_total}, "
            f"{url} declared {total_rows}"
        )
    return total_rows


def validate_row_count(table: pd.DataFrame, total_rows: int, model: str) -> None:
    """
    Check that paging produced exactly the declared number of rows.

    Raises:
        MalformedResponseError: On a mismatch
    """
    if len(table) != total_rows:
        raise MalformedResponseError(
            f"Query for {model} declared {total_rows} rows but returned {len(table)}"
        )


def validate_session_row(row) -> pd.Series:
    """
    Reduce a table or Series describing one session to a Series.

    Args:
        row: One-row DataFrame or Series

    Returns:
        pd.Series for the session

    Raises:
        UsageError: If row is neither, or a DataFrame with != 1 rows, or it
            has no 'id'
    """
    if isinstance(row, pd.DataFrame):
        if len(row) != 1:
            raise UsageError(f"Expected a table with exactly one session row, got {len(row)} rows")
        row = row.iloc[0]
    if not isinstance(row, pd.Series):
        raise UsageError(f"Expected a session id, a one-row table or a Series, got {type(row).__name__}")
    if 'id' not in row.index:
        raise UsageError("Session row has no 'id' field")
    return row


def summarize_manifest(tables: Dict[str, pd.DataFrame]) -> List[str]:
    """
    Describe the size of each manifest table.

    Returns:
        List of 'name: N rows' lines
    """
    return [f"{name}: {len(table)} rows" for name, table in tables.items()]
