"""Shared fixtures: fake AWS credentials and mocked DynamoDB tables."""
import boto3
import pytest
from moto import mock_aws

EVENTS_TABLE = 'test-listing-events'
SOURCES_TABLE = 'test-listing-sources'


@pytest.fixture(autouse=True)
def aws_credentials(monkeypatch):
    """Make sure no test can reach a real AWS account."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_SECURITY_TOKEN', 'testing')
    monkeypatch.setenv('AWS_SESSION_TOKEN', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')


@pytest.fixture
def mocked_aws():
    with mock_aws():
        yield boto3.resource('dynamodb', region_name='us-east-1')


@pytest.fixture
def events_table(mocked_aws):
    """Create a mock events table for testing."""
    return mocked_aws.create_table(
        TableName=EVENTS_TABLE,
        KeySchema=[{'AttributeName': 'event_id', 'KeyType': 'HASH'}],
        AttributeDefinitions=[{'AttributeName': 'event_id', 'AttributeType': 'S'}],
        BillingMode='PAY_PER_REQUEST'
    )


@pytest.fixture
def sources_table(mocked_aws):
    """Create a mock sources table for testing."""
    return mocked_aws.create_table(
        TableName=SOURCES_TABLE,
        KeySchema=[{'AttributeName': 'source_id', 'KeyType': 'HASH'}],
        AttributeDefinitions=[{'AttributeName': 'source_id', 'AttributeType': 'S'}],
        BillingMode='PAY_PER_REQUEST'
    )



