"""DynamoDB registry of scrape sources and their health counters."""
import logging
import threading
from dataclasses import asdict, fields
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

import boto3
from boto3.dynamodb.conditions import Attr
from botocore.exceptions import BotoCoreError, ClientError

from monitoring.alerting import format_failure_alert
from processor.models import ProviderMatch, Source
from storage.event_store import DatastoreError

logger = logging.getLogger(__name__)

DATETIME_FIELDS = ('last_scraped', 'last_detection_attempt')
INT_FIELDS = ('priority', 'consecutive_failures', 'consecutive_zero_results', 'last_item_count')

DETECTION_TRIGGER = 2
DETECTION_DEBOUNCE = timedelta(hours=6)


class SourceNotFoundError(KeyError):
    """No source is registered under the given id."""


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def source_to_item(source: Source) -> dict:
    item = {}
    for key, value in asdict(source).items():
        if value is None:
            continue
        if key in DATETIME_FIELDS:
            value = value.isoformat()
        item[key] = value
    return item


def item_to_source(item: dict) -> Source:
    known = {f.name for f in fields(Source)}
    values = {}
    for key, value in item.items():
        if key not in known:
            continue
        if key in DATETIME_FIELDS and value:
            value = datetime.fromisoformat(value)
        elif key in INT_FIELDS and value is not None:
            value = int(value)
        values[key] = value
    return Source(**values)


def should_attempt_detection(source: Source, now: Optional[datetime] = None) -> bool:
    """
    Decide whether a struggling source should be re-checked for a provider switch.

    True after 2+ consecutive failures or 2+ consecutive zero-result runs,
    unless a detection ran within the last 6 hours.
    """
    if (source.consecutive_failures < DETECTION_TRIGGER
            and source.consecutive_zero_results < DETECTION_TRIGGER):
        return False
    if source.last_detection_attempt:
        now = now or utc_now()
        if now - source.last_detection_attempt < DETECTION_DEBOUNCE:
            return False
    return True


class SourceRegistry:
    """Manager for the sources table."""

    def __init__(
        self,
        table_name: str,
        alert_gateway=None,
        failure_threshold: int = 3,
        clock: Callable[[], datetime] = utc_now,
        region_name: Optional[str] = None
    ):
        """
        Initialize DynamoDB resource and table reference.

        Args:
            table_name: Name of the sources table
            alert_gateway: Object with send(message) -> bool, or None
            failure_threshold: Consecutive failures that trigger an alert
            clock: Returns the current time (timezone-aware)
            region_name: AWS region, defaults to the environment's
        """
        self.table_name = table_name
        self.alert_gateway = alert_gateway
        self.failure_threshold = failure_threshold
        self._clock = clock
        self.dynamodb = boto3.resource('dynamodb', region_name=region_name)
        self.table = self.dynamodb.Table(table_name)
        self._locks = {}
        self._locks_guard = threading.Lock()
        logger.info(f"Initialized SourceRegistry for table: {table_name}")

    def _lock_for(self, source_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(source_id, threading.Lock())

    def register_source(self, source: Source) -> Source:
        try:
            self.table.put_item(Item=source_to_item(source))
        except (ClientError, BotoCoreError) as e:
            raise DatastoreError(f"Error registering source {source.name}: {e}") from e
        logger.info(f"Registered source '{source.name}' ({source.booking_system})")
        return source

    def get_source(self, source_id: str) -> Source:
        try:
            response = self.table.get_item(Key={'source_id': source_id})
        except (ClientError, BotoCoreError) as e:
            raise DatastoreError(f"Error reading source {source_id}: {e}") from e
        if 'Item' not in response:
            raise SourceNotFoundError(source_id)
        return item_to_source(response['Item'])

    def _scan(self, **kwargs) -> List[dict]:
        try:
            response = self.table.scan(**kwargs)
            items = response.get('Items', [])

            # Handle pagination
            while 'LastEvaluatedKey' in response:
                response = self.table.scan(ExclusiveStartKey=response['LastEvaluatedKey'], **kwargs)
                items.extend(response.get('Items', []))
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error scanning DynamoDB table: {e}")
            raise DatastoreError(f"Error scanning {self.table_name}: {e}") from e
        return items

    def list_sources(self) -> List[Source]:
        return [item_to_source(item) for item in self._scan()]

    def list_active_sources(self) -> List[Source]:
        """
        Retrieve active sources, highest priority first.
        """
        sources = [item_to_source(item) for item in self._scan(FilterExpression=Attr('is_active').eq(True))]
        sources.sort(key=lambda s: s.priority, reverse=True)
        return sources

    def find_by_identifier(self, booking_system: str, identifier: str) -> Optional[Source]:
        items = self._scan(
            FilterExpression=Attr('booking_system').eq(booking_system) & Attr('identifier').eq(identifier)
        )
        return item_to_source(items[0]) if items else None

    def _update(
        self,
        source_id: str,
        set_values: Optional[Dict] = None,
        add_values: Optional[Dict] = None,
        remove: Optional[List[str]] = None
    ) -> Source:
        """
        Apply one atomic UpdateItem to an existing source.

        Returns:
            The source as stored after the update
        """
        names = {}
        values = {}
        clauses = []

        def placeholder(attribute, value=None, with_value=True):
            key = f"#a{len(names)}"
            names[key] = attribute
            if not with_value:
                return key, None
            value_key = f":v{len(values)}"
            values[value_key] = value
            return key, value_key

        if set_values:
            parts = [' = '.join(placeholder(k, v)) for k, v in set_values.items()]
            clauses.append('SET ' + ', '.join(parts))
        if add_values:
            parts = [' '.join(placeholder(k, v)) for k, v in add_values.items()]
            clauses.append('ADD ' + ', '.join(parts))
        if remove:
            parts = [placeholder(k, with_value=False)[0] for k in remove]
            clauses.append('REMOVE ' + ', '.join(parts))

        names['#id'] = 'source_id'
        kwargs = {
            'Key': {'source_id': source_id},
            'UpdateExpression': ' '.join(clauses),
            'ConditionExpression': 'attribute_exists(#id)',
            'ExpressionAttributeNames': names,
            'ReturnValues': 'ALL_NEW'
        }
        if values:
            kwargs['ExpressionAttributeValues'] = values

        try:
            response = self.table.update_item(**kwargs)
        except ClientError as e:
            if e.response['Error']['Code'] == 'ConditionalCheckFailedException':
                raise SourceNotFoundError(source_id) from e
            logger.error(f"Error updating source {source_id}: {e}")
            raise DatastoreError(f"Error updating source {source_id}: {e}") from e
        except BotoCoreError as e:
            raise DatastoreError(f"Error updating source {source_id}: {e}") from e

        return item_to_source(response['Attributes'])

    def record_success(self, source_id: str, item_count: int) -> Source:
        """
        Record a successful scrape and reset the failure counter.

        Args:
            source_id: Registered source
            item_count: Items the scrape produced; zero extends the
                zero-result streak, anything else resets it

        Returns:
            Updated Source
        """
        set_values = {
            'last_scraped': self._clock().isoformat(),
            'last_scrape_success': True,
            'last_item_count': item_count,
            'consecutive_failures': 0,
        }
        add_values = None
        if item_count == 0:
            add_values = {'consecutive_zero_results': 1}
        else:
            set_values['consecutive_zero_results'] = 0
        return self._update(source_id, set_values=set_values, add_values=add_values)

    def record_failure(self, source_id: str, error_message: str) -> Source:
        """
        Record a failed scrape.

        The counter increment is a single atomic ADD. Once the count reaches
        the threshold an alert is sent, and auto-discovered sources are
        deactivated.

        Args:
            source_id: Registered source
            error_message: Error to keep as last_error

        Returns:
            Updated Source
        """
        with self._lock_for(source_id):
            source = self._update(
                source_id,
                set_values={
                    'last_scraped': self._clock().isoformat(),
                    'last_scrape_success': False,
                    'last_error': error_message[:500],
                },
                add_values={'consecutive_failures': 1}
            )

            if source.consecutive_failures < self.failure_threshold:
                return source

            logger.warning(
                f"{source.name} has failed {source.consecutive_failures} times consecutively",
                extra={'source_id': source_id, 'last_error': error_message}
            )

            deactivate = source.auto_discovered and source.is_active
            if deactivate:
                source = self._update(source_id, set_values={
                    'is_active': False,
                    'notes': f"Deactivated after {source.consecutive_failures} consecutive failures",
                })
                logger.warning(f"Deactivated auto-discovered source '{source.name}'")

            if self.alert_gateway is not None:
                self.alert_gateway.send(format_failure_alert(
                    source.name, source.consecutive_failures, error_message, deactivated=deactivate
                ))

            return source

    def should_attempt_detection(self, source: Source) -> bool:
        return should_attempt_detection(source, now=self._clock())

    def record_detection_attempt(self, source_id: str) -> Source:
        return self._update(source_id, set_values={'last_detection_attempt': self._clock().isoformat()})

    def apply_provider_switch(self, source_id: str, match: ProviderMatch) -> Source:
        """
        Point a source at a newly detected booking provider.

        The old system and identifier are kept in previous_* fields so the
        switch can be rolled back.

        Args:
            source_id: Registered source
            match: Provider detected on the business website

        Returns:
            Updated Source
        """
        with self._lock_for(source_id):
            current = self.get_source(source_id)
            set_values = {
                'previous_booking_system': current.booking_system,
                'booking_system': match.system_key,
                'consecutive_failures': 0,
                'consecutive_zero_results': 0,
                'provider_change_confirmed': False,
                'notes': (
                    f"Auto-switched from {current.booking_system} to {match.system_key}. "
                    f"Detected on {match.detected_on_url}."
                ),
            }
            remove = ['last_error']
            if current.identifier:
                set_values['previous_identifier'] = current.identifier
            if match.extracted_id:
                set_values['identifier'] = match.extracted_id
            else:
                remove.append('identifier')

            logger.info(
                f"Switching '{current.name}' from {current.booking_system} to {match.system_key}",
                extra={'source_id': source_id, 'identifier': match.extracted_id}
            )
            return self._update(source_id, set_values=set_values, remove=remove)

    def confirm_provider_change(self, source_id: str) -> Source:
        """Mark an auto-switched provider as confirmed by a scrape that returned items."""
        source = self._update(source_id, set_values={'provider_change_confirmed': True})
        logger.info(
            f"Provider change confirmed for '{source.name}': "
            f"{source.previous_booking_system} -> {source.booking_system}",
            extra={'source_id': source_id}
        )
        return source
