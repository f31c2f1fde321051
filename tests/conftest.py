"""Shared pytest fixtures for stack-driver tests."""

import copy
import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from config import DriverConfig, RetrySettings

REPO_ROOT = Path(__file__).parent.parent

# Bucket -> Distribution -> DNSRecord, the chain used across executor tests
SITE_TEMPLATE = {
    'AWSTemplateFormatVersion': '2010-09-09',
    'Description': 'Minimal static site',
    'Parameters': {
        'DomainName': {'Type': 'String', 'Default': 'www.example.org'},
    },
    'Resources': {
        'Bucket': {
            'Type': 'AWS::S3::Bucket',
            'Properties': {
                'BucketName': {'Fn::Join': ['-', {'Fn::Split': ['.', {'Ref': 'DomainName'}]}]},
            },
        },
        'Distribution': {
            'Type': 'AWS::CloudFront::Distribution',
            'Properties': {
                'DistributionConfig': {
                    'Comment': {'Fn::Sub': 'Distribution for ${DomainName}'},
                    'Origins': [
                        {'Id': 'site', 'DomainName': {'Fn::GetAtt': ['Bucket', 'RegionalDomainName']}},
                    ],
                },
            },
        },
        'DNSRecord': {
            'Type': 'AWS::Route53::RecordSet',
            'Properties': {
                'HostedZoneId': 'Z123',
                'Name': {'Ref': 'DomainName'},
                'Type': 'A',
                'AliasTarget': {'DNSName': {'Fn::GetAtt': ['Distribution', 'DomainName']}},
            },
        },
    },
    'Outputs': {
        'BucketName': {'Value': {'Ref': 'Bucket'}},
        'SiteDomain': {'Value': {'Fn::GetAtt': ['Distribution', 'DomainName']}},
    },
}


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    """Keep developer environment variables out of tests."""
    for var in ('STACK_DRIVER_CONFIG', 'STACK_DRIVER_STATE_DIR', 'STACK_DRIVER_TOKEN'):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def site_template():
    """Fresh copy of the Bucket -> Distribution -> DNSRecord template dict."""
    return copy.deepcopy(SITE_TEMPLATE)


@pytest.fixture
def static_website_path():
    """Path to the shipped static website template."""
    return REPO_ROOT / 'templates' / 'static-website.yaml'


@pytest.fixture
def state_dir(tmp_path):
    """Temporary state directory."""
    path = tmp_path / 'states'
    path.mkdir()
    return path


@pytest.fixture
def driver_config(state_dir):
    """DriverConfig with a temporary state dir and no retry delays."""
    config = DriverConfig(state_dir=state_dir)
    config.retry = RetrySettings(max_attempts=3, base_delay=0.0, max_delay=0.0)
    return config
