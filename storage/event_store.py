"""DynamoDB event store with identity-keyed dedup and schedule refresh."""
import logging
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

import boto3
from boto3.dynamodb.conditions import Attr
from botocore.exceptions import BotoCoreError, ClientError

from processor.models import CanonicalEvent, DuplicationCheck, InsertResult, ReplaceResult

logger = logging.getLogger(__name__)

# Per-item problems that do not mean the datastore is unusable
ITEM_ERROR_CODES = ('ValidationException', 'ItemCollectionSizeLimitExceededException')


class DatastoreError(Exception):
    """Datastore unreachable or rejecting requests. Fatal for a pipeline run."""


def event_to_item(event: CanonicalEvent) -> dict:
    """
    Convert CanonicalEvent object to DynamoDB item.

    Args:
        event: CanonicalEvent object

    Returns:
        DynamoDB item dictionary
    """
    item = {
        'event_id': event.event_id,
        'title': event.title,
        'start_date': event.start_date,
        'start_time': event.start_time,
        'venue_name': event.venue_name,
        'category': event.category,
        'event_type': event.event_type,
        'source_url': event.source_url,
        'description': event.description,
        'tags': list(event.tags),
        'confidence_score': Decimal(str(event.confidence_score)),
        'last_updated': event.last_updated,
        'ttl': event.ttl
    }

    # Add optional fields if present
    if event.end_time:
        item['end_time'] = event.end_time
    if event.venue_id:
        item['venue_id'] = event.venue_id

    return item


def item_to_event(item: dict) -> Optional[CanonicalEvent]:
    """
    Convert DynamoDB item to CanonicalEvent object.

    Returns:
        CanonicalEvent object or None if the item is malformed
    """
    try:
        return CanonicalEvent(
            event_id=item['event_id'],
            title=item['title'],
            start_date=item['start_date'],
            start_time=item['start_time'],
            end_time=item.get('end_time'),
            venue_name=item['venue_name'],
            venue_id=item.get('venue_id'),
            category=item.get('category', 'other'),
            event_type=item.get('event_type', 'class'),
            source_url=item.get('source_url', ''),
            description=item.get('description', ''),
            tags=list(item.get('tags', [])),
            confidence_score=float(item.get('confidence_score', 0)),
            last_updated=int(item.get('last_updated', 0)),
            ttl=int(item.get('ttl', 0))
        )
    except (KeyError, ValueError, TypeError) as e:
        logger.warning(f"Failed to convert item to CanonicalEvent: {e}")
        return None


class EventStore:
    """Dedup/upsert engine over the events table."""

    TRANSACTION_LIMIT = 100  # DynamoDB TransactWriteItems action limit
    DUPLICATION_RATIO = 25

    def __init__(self, table_name: str, region_name: Optional[str] = None):
        """
        Initialize DynamoDB resource and table reference.

        Args:
            table_name: Name of the events table
            region_name: AWS region, defaults to the environment's
        """
        self.table_name = table_name
        self.dynamodb = boto3.resource('dynamodb', region_name=region_name)
        self.table = self.dynamodb.Table(table_name)
        logger.info(f"Initialized EventStore for table: {table_name}")

    def exists(self, event: CanonicalEvent) -> bool:
        try:
            response = self.table.get_item(Key={'event_id': event.event_id})
        except (ClientError, BotoCoreError) as e:
            raise DatastoreError(f"Error reading event {event.event_id}: {e}") from e
        return 'Item' in response

    def insert_event(self, event: CanonicalEvent) -> bool:
        """
        Insert an event unless one with the same identity key exists.

        Returns:
            True if inserted, False if it was a duplicate

        Raises:
            ClientError: If DynamoDB rejected this particular item
            DatastoreError: If the datastore could not be written
        """
        try:
            self.table.put_item(
                Item=event_to_item(event),
                ConditionExpression='attribute_not_exists(event_id)'
            )
            return True
        except ClientError as e:
            code = e.response['Error']['Code']
            if code == 'ConditionalCheckFailedException':
                logger.debug(f"Duplicate skipped: {event.title} on {event.start_date}")
                return False
            if code in ITEM_ERROR_CODES:
                raise
            logger.error(f"Error writing to DynamoDB table {self.table_name}: {e}")
            raise DatastoreError(f"Error writing event {event.event_id}: {e}") from e
        except BotoCoreError as e:
            raise DatastoreError(f"Error writing event {event.event_id}: {e}") from e

    def insert_events(self, events: Iterable[CanonicalEvent]) -> InsertResult:
        """
        Insert-or-skip every event.

        Args:
            events: Validated events

        Returns:
            InsertResult with inserted and duplicate counts

        Raises:
            DatastoreError: If the datastore is unreachable or rejects writes
        """
        inserted = 0
        duplicates = 0
        errors = []
        seen = set()

        for event in events:
            if event.event_id in seen:
                duplicates += 1
                continue
            seen.add(event.event_id)

            try:
                if self.insert_event(event):
                    inserted += 1
                else:
                    duplicates += 1
            except ClientError as e:
                error_msg = f"{event.title}: {e.response['Error']['Code']}"
                logger.warning(f"Failed to insert event {error_msg}")
                errors.append(error_msg)

        logger.info(f"Inserted {inserted} events, skipped {duplicates} duplicates")
        return InsertResult(inserted=inserted, duplicates=duplicates, errors=errors)

    def find_future_events(self, venue_name: str, source_tag: str, from_date: str) -> Dict[str, CanonicalEvent]:
        """
        Retrieve the events of one source on or after a date.

        Args:
            venue_name: Venue the source publishes for
            source_tag: Tag identifying the producing source
            from_date: ISO date, inclusive

        Returns:
            Dictionary mapping event_id to CanonicalEvent objects
        """
        filter_expression = Attr('venue_name').eq(venue_name) & Attr('start_date').gte(from_date)

        try:
            response = self.table.scan(FilterExpression=filter_expression)
            items = response.get('Items', [])

            # Handle pagination
            while 'LastEvaluatedKey' in response:
                response = self.table.scan(
                    FilterExpression=filter_expression,
                    ExclusiveStartKey=response['LastEvaluatedKey']
                )
                items.extend(response.get('Items', []))
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error scanning DynamoDB table: {e}")
            raise DatastoreError(f"Error scanning {self.table_name}: {e}") from e

        events = {}
        for item in items:
            event = item_to_event(item)
            if event and source_tag in event.tags:
                events[event.event_id] = event
        return events

    def check_duplication(
        self,
        venue_name: str,
        source_tag: str,
        from_date: str,
        max_ratio: int = DUPLICATION_RATIO
    ) -> DuplicationCheck:
        """
        Delete a source's future auto-scraped events when they look like one
        schedule stamped onto every date.

        A class running daily for a month gives a ratio of about 30 records
        per title over the whole window; two to five times a week stays well
        under the limit.

        Args:
            venue_name: Venue the source publishes for
            source_tag: Tag identifying the producing source
            from_date: ISO date, inclusive
            max_ratio: Records per distinct title above which data is dropped

        Returns:
            DuplicationCheck with totals and the number of deleted events
        """
        events = [
            event for event in self.find_future_events(venue_name, source_tag, from_date).values()
            if 'auto-scraped' in event.tags
        ]
        titles = {event.title for event in events}
        check = DuplicationCheck(total=len(events), distinct_titles=len(titles))
        if not events or len(events) <= max_ratio * len(titles):
            return check

        logger.error(
            f"Duplication check failed for {venue_name}: {len(events)} records for "
            f"{len(titles)} distinct titles (ratio {len(events) / len(titles):.1f}x). "
            f"Deleting suspicious data."
        )
        try:
            with self.table.batch_writer() as writer:
                for event in events:
                    writer.delete_item(Key={'event_id': event.event_id})
        except (ClientError, BotoCoreError) as e:
            raise DatastoreError(f"Error deleting duplicated events for {venue_name}: {e}") from e

        check.deleted = len(events)
        return check

    def replace_future_events(
        self,
        venue_name: str,
        source_tag: str,
        events: List[CanonicalEvent],
        from_date: str
    ) -> ReplaceResult:
        """
        Refresh a recurring schedule: make the source's future events equal
        the given set.

        Stale slots are deleted and new ones written in one transaction when
        the change fits; otherwise new items are written first and stale ones
        deleted afterwards, so readers never see an empty schedule.

        Args:
            venue_name: Venue the source publishes for
            source_tag: Tag identifying the producing source
            events: Complete current schedule from the source
            from_date: ISO date from which the schedule is owned

        Returns:
            ReplaceResult with added, unchanged, deleted counts
        """
        existing = self.find_future_events(venue_name, source_tag, from_date)
        incoming = {event.event_id: event for event in events}

        to_add = [event for event_id, event in incoming.items() if event_id not in existing]
        to_delete = [event_id for event_id in existing if event_id not in incoming]
        unchanged = len(incoming) - len(to_add)

        logger.info(
            f"Refresh plan for {venue_name}: {len(to_add)} to add, "
            f"{unchanged} unchanged, {len(to_delete)} to delete"
        )

        if not to_add and not to_delete:
            return ReplaceResult(added=0, unchanged=unchanged, deleted=0)

        try:
            if len(to_add) + len(to_delete) <= self.TRANSACTION_LIMIT:
                self._transact_replace(to_add, to_delete)
            else:
                self._upsert_then_delete(to_add, to_delete)
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error refreshing events for {venue_name}: {e}")
            raise DatastoreError(f"Error refreshing events for {venue_name}: {e}") from e

        return ReplaceResult(added=len(to_add), unchanged=unchanged, deleted=len(to_delete))

    def _transact_replace(self, to_add: List[CanonicalEvent], to_delete: List[str]) -> None:
        actions = [
            {'Put': {'TableName': self.table_name, 'Item': event_to_item(event)}}
            for event in to_add
        ]
        actions.extend(
            {'Delete': {'TableName': self.table_name, 'Key': {'event_id': event_id}}}
            for event_id in to_delete
        )
        # The resource's client serializes native Python values
        self.dynamodb.meta.client.transact_write_items(TransactItems=actions)

    def _upsert_then_delete(self, to_add: List[CanonicalEvent], to_delete: List[str]) -> None:
        with self.table.batch_writer(overwrite_by_pkeys=['event_id']) as writer:
            for event in to_add:
                writer.put_item(Item=event_to_item(event))
        with self.table.batch_writer() as writer:
            for event_id in to_delete:
                writer.delete_item(Key={'event_id': event_id})
