"""Row store interface and its backends."""

import asyncio
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from functools import reduce

import boto3
import boto3.session
from boto3.dynamodb.conditions import Attr
from botocore.exceptions import BotoCoreError, ClientError

from .config import StoreConfig
from .errors import (
    AuthenticationFailure,
    DuplicateKeyConflict,
    NotFound,
    PermissionDenied,
    StoreReadFailure,
    StoreWriteFailure,
)
from .logging_config import create_execution_logger

FEEDS_TABLE = "feeds"
ITEMS_TABLE = "feed_items"


@dataclass
class SelectResult:
    rows: list[dict] = field(default_factory=list)
    total_count: int = 0


class Store(ABC):
    """Query interface the synchronization core needs from persistence.

    Predicates are equality mappings of column name to value; a ``None``
    value matches a null or missing column.
    """

    @abstractmethod
    async def select_one(self, table: str, predicate: dict) -> dict:
        """Return the single row matching ``predicate``.

        Raises:
            NotFound: If no row matches
            StoreReadFailure: If the store cannot be read
        """

    @abstractmethod
    async def select_many(
        self,
        table: str,
        predicate: dict,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
        offset: int = 0,
    ) -> SelectResult:
        """Return matching rows (one page of them) and the total match count."""

    @abstractmethod
    async def insert_many(self, table: str, rows: list[dict]) -> list[dict]:
        """Insert rows and return those written.

        Raises:
            DuplicateKeyConflict: If some ids already exist; the others are written
            PermissionDenied: If the store refuses the write
            StoreWriteFailure: On any other write error
        """

    @abstractmethod
    async def update(self, table: str, predicate: dict, patch: dict) -> int:
        """Apply ``patch`` to matching rows and return how many were touched."""

    @abstractmethod
    async def delete_many(self, table: str, predicate: dict) -> int:
        """Delete matching rows and return how many were removed."""

    @abstractmethod
    async def get_current_principal(self) -> str:
        """Return the authenticated user id.

        Raises:
            AuthenticationFailure: If nobody is authenticated
        """


def _matches(row: dict, predicate: dict) -> bool:
    return all(row.get(column) == value for column, value in predicate.items())


def _sort_rows(rows: list[dict], order_by: str, descending: bool) -> list[dict]:
    # Rows without the sort column always come last
    present = [row for row in rows if row.get(order_by) is not None]
    missing = [row for row in rows if row.get(order_by) is None]
    present.sort(key=lambda row: row[order_by], reverse=descending)
    return present + missing


def _page(rows: list[dict], limit: int | None, offset: int) -> list[dict]:
    if limit is None:
        return rows[offset:]
    return rows[offset : offset + limit]


class MemoryStore(Store):
    """Dict-backed store with a primary key constraint on ``id``."""

    def __init__(self, principal_id: str | None = None):
        self.principal_id = principal_id
        self.tables: dict[str, dict[str, dict]] = {FEEDS_TABLE: {}, ITEMS_TABLE: {}}

    def _rows(self, table: str) -> dict[str, dict]:
        return self.tables.setdefault(table, {})

    async def select_one(self, table: str, predicate: dict) -> dict:
        for row in self._rows(table).values():
            if _matches(row, predicate):
                return dict(row)
        raise NotFound(f"No row in {table} matches {predicate}")

    async def select_many(
        self,
        table: str,
        predicate: dict,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
        offset: int = 0,
    ) -> SelectResult:
        rows = [dict(row) for row in self._rows(table).values() if _matches(row, predicate)]
        if order_by:
            rows = _sort_rows(rows, order_by, descending)
        return SelectResult(rows=_page(rows, limit, offset), total_count=len(rows))

    async def insert_many(self, table: str, rows: list[dict]) -> list[dict]:
        existing = self._rows(table)
        inserted, conflicting = [], []
        for row in rows:
            row_id = row.get("id")
            if not row_id:
                raise StoreWriteFailure(f"Row without id cannot be inserted into {table}")
            if row_id in existing:
                conflicting.append(row_id)
                continue
            existing[row_id] = dict(row)
            inserted.append(dict(row))

        if conflicting:
            raise DuplicateKeyConflict(inserted, conflicting)
        return inserted

    async def update(self, table: str, predicate: dict, patch: dict) -> int:
        touched = 0
        for row in self._rows(table).values():
            if _matches(row, predicate):
                row.update(patch)
                touched += 1
        return touched

    async def delete_many(self, table: str, predicate: dict) -> int:
        rows = self._rows(table)
        doomed = [row_id for row_id, row in rows.items() if _matches(row, predicate)]
        for row_id in doomed:
            del rows[row_id]
        return len(doomed)

    async def get_current_principal(self) -> str:
        if not self.principal_id:
            raise AuthenticationFailure()
        return self.principal_id


class DynamoDBStore(Store):
    """Store backed by DynamoDB tables keyed on ``id``.

    Blocking SDK calls run in a worker thread so the event loop keeps
    serving other feeds.
    """

    def __init__(self, config: StoreConfig | None = None, execution_id: str | None = None):
        """Initialize the store with DynamoDB configuration.

        Args:
            config: Table names, region and the acting principal
            execution_id: Execution ID for logging context
        """
        self.config = config or StoreConfig()
        self.logger = create_execution_logger("store", execution_id)
        self._local = threading.local()
        self._table_names = {
            FEEDS_TABLE: self.config.feeds_table,
            ITEMS_TABLE: self.config.items_table,
        }

        self.logger.info(
            "DynamoDBStore initialized",
            feeds_table=self.config.feeds_table,
            items_table=self.config.items_table,
            aws_region=self.config.region,
        )

    @property
    def dynamodb(self):
        """DynamoDB resource for the calling thread.

        boto3 sessions and resources are not thread-safe, and SDK calls run
        in ``asyncio.to_thread`` workers, so each thread builds its own.
        """
        resource = getattr(self._local, "resource", None)
        if resource is None:
            session = boto3.session.Session()
            resource = session.resource("dynamodb", region_name=self.config.region)
            self._local.resource = resource
        return resource

    def _table(self, table: str):
        return self.dynamodb.Table(self._table_names.get(table, table))

    def _scan(self, table: str, predicate: dict) -> list[dict]:
        kwargs = {}
        condition = _filter_expression(predicate)
        if condition is not None:
            kwargs["FilterExpression"] = condition

        rows = []
        while True:
            response = self._table(table).scan(**kwargs)
            rows.extend(response.get("Items", []))
            last_key = response.get("LastEvaluatedKey")
            if not last_key:
                return rows
            kwargs["ExclusiveStartKey"] = last_key

    def _read(self, table: str, predicate: dict) -> list[dict]:
        try:
            if set(predicate) == {"id"}:
                response = self._table(table).get_item(Key={"id": predicate["id"]})
                return [response["Item"]] if "Item" in response else []
            return self._scan(table, predicate)
        except (ClientError, BotoCoreError) as e:
            self.logger.error(
                f"Error reading from {table}: {e}", table=table, error=str(e)
            )
            raise StoreReadFailure(f"Error reading from {table}: {e}") from e

    async def select_one(self, table: str, predicate: dict) -> dict:
        rows = await asyncio.to_thread(self._read, table, predicate)
        if not rows:
            raise NotFound(f"No row in {table} matches {predicate}")
        return rows[0]

    async def select_many(
        self,
        table: str,
        predicate: dict,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
        offset: int = 0,
    ) -> SelectResult:
        rows = await asyncio.to_thread(self._read, table, predicate)
        if order_by:
            rows = _sort_rows(rows, order_by, descending)
        return SelectResult(rows=_page(rows, limit, offset), total_count=len(rows))

    def _put_all(self, table: str, rows: list[dict]) -> list[dict]:
        inserted, conflicting = [], []
        for row in rows:
            try:
                self._table(table).put_item(
                    Item=row, ConditionExpression="attribute_not_exists(id)"
                )
            except ClientError as e:
                code = e.response.get("Error", {}).get("Code", "Unknown")
                if code == "ConditionalCheckFailedException":
                    conflicting.append(row["id"])
                    continue
                if code == "AccessDeniedException":
                    raise PermissionDenied(
                        f"Insert into {table} denied: {e}", inserted=inserted
                    ) from e
                self.logger.error(
                    f"Error storing row {row['id']}: {e}", table=table, error=str(e)
                )
                raise StoreWriteFailure(f"Error writing to {table}: {e}") from e
            except BotoCoreError as e:
                raise StoreWriteFailure(f"Error writing to {table}: {e}") from e
            inserted.append(row)

        if conflicting:
            raise DuplicateKeyConflict(inserted, conflicting)
        return inserted

    async def insert_many(self, table: str, rows: list[dict]) -> list[dict]:
        return await asyncio.to_thread(self._put_all, table, rows)

    def _update_all(self, table: str, predicate: dict, patch: dict) -> int:
        if not patch:
            return 0
        rows = self._read(table, predicate)
        names = {f"#f{i}": column for i, column in enumerate(patch)}
        values = {f":v{i}": value for i, value in enumerate(patch.values())}
        expression = "SET " + ", ".join(f"#f{i} = :v{i}" for i in range(len(patch)))
        try:
            for row in rows:
                self._table(table).update_item(
                    Key={"id": row["id"]},
                    UpdateExpression=expression,
                    ExpressionAttributeNames=names,
                    ExpressionAttributeValues=values,
                )
        except (ClientError, BotoCoreError) as e:
            self.logger.error(f"Error updating {table}: {e}", table=table, error=str(e))
            raise StoreWriteFailure(f"Error updating {table}: {e}") from e
        return len(rows)

    async def update(self, table: str, predicate: dict, patch: dict) -> int:
        return await asyncio.to_thread(self._update_all, table, predicate, patch)

    def _delete_all(self, table: str, predicate: dict) -> int:
        rows = self._read(table, predicate)
        try:
            with self._table(table).batch_writer() as batch:
                for row in rows:
                    batch.delete_item(Key={"id": row["id"]})
        except (ClientError, BotoCoreError) as e:
            self.logger.error(f"Error deleting from {table}: {e}", table=table, error=str(e))
            raise StoreWriteFailure(f"Error deleting from {table}: {e}") from e
        return len(rows)

    async def delete_many(self, table: str, predicate: dict) -> int:
        return await asyncio.to_thread(self._delete_all, table, predicate)

    async def get_current_principal(self) -> str:
        if not self.config.principal_id:
            raise AuthenticationFailure()
        return self.config.principal_id


def _filter_expression(predicate: dict):
    conditions = [
        Attr(column).not_exists() | Attr(column).eq(None)
        if value is None
        else Attr(column).eq(value)
        for column, value in predicate.items()
    ]
    if not conditions:
        return None
    return reduce(lambda left, right: left & right, conditions)
