"""Providers for the resource types used by the static website stack.

Each provider proposes a physical id shaped like the one the real service
would assign and derives the attributes templates read with Fn::GetAtt.
"""

import logging
import re
import secrets
import string
import uuid
from typing import Optional

from providers.base import (
    ProviderResult,
    ResourceProvider,
    ResourceRequest,
    require_property,
)

logger = logging.getLogger(__name__)

_ID_ALPHABET = string.ascii_uppercase + string.digits


def _random_id(prefix: str, length: int) -> str:
    return prefix + ''.join(secrets.choice(_ID_ALPHABET) for _ in range(length))


def _partition(region: str) -> str:
    return 'aws-cn' if region.startswith('cn-') else 'aws'


def _generated_name(request: ResourceRequest, max_length: int, lower: bool = False) -> str:
    """Name in the '<stack>-<logical>-<suffix>' form used when none is given."""
    suffix = _random_id('', 12)
    name = f'{request.stack_name}-{request.logical_name}'[:max_length - 13]
    name = f'{name}-{suffix}'
    if lower:
        name = re.sub(r'[^a-z0-9.-]', '-', name.lower())
    return name


class S3BucketProvider(ResourceProvider):
    """AWS::S3::Bucket (physical id = bucket name)."""

    resource_type = 'AWS::S3::Bucket'
    name_property = 'BucketName'

    def physical_id(self, request: ResourceRequest) -> Optional[str]:
        return super().physical_id(request) or _generated_name(request, 63, lower=True)

    def derive_attributes(self, request: ResourceRequest, physical_id: str) -> dict:
        region = request.region
        return {
            'Arn': f'arn:{_partition(region)}:s3:::{physical_id}',
            'DomainName': f'{physical_id}.s3.amazonaws.com',
            'RegionalDomainName': f'{physical_id}.s3.{region}.amazonaws.com',
            'WebsiteURL': f'http://{physical_id}.s3-website-{region}.amazonaws.com',
        }


class S3BucketPolicyProvider(ResourceProvider):
    """AWS::S3::BucketPolicy (physical id = bucket name)."""

    resource_type = 'AWS::S3::BucketPolicy'

    def physical_id(self, request: ResourceRequest) -> Optional[str]:
        require_property(request, 'PolicyDocument')
        return str(require_property(request, 'Bucket'))


class CloudFrontDistributionProvider(ResourceProvider):
    """AWS::CloudFront::Distribution."""

    resource_type = 'AWS::CloudFront::Distribution'

    def physical_id(self, request: ResourceRequest) -> Optional[str]:
        require_property(request, 'DistributionConfig')
        return _random_id('E', 13)

    def derive_attributes(self, request: ResourceRequest, physical_id: str) -> dict:
        return {
            'Id': physical_id,
            'DomainName': f'{physical_id.lower()}.cloudfront.net',
        }


class CloudFrontOriginAccessIdentityProvider(ResourceProvider):
    """AWS::CloudFront::CloudFrontOriginAccessIdentity."""

    resource_type = 'AWS::CloudFront::CloudFrontOriginAccessIdentity'

    def physical_id(self, request: ResourceRequest) -> Optional[str]:
        return _random_id('E', 13)

    def create(self, request: ResourceRequest) -> ProviderResult:
        result = super().create(request)
        result.attributes.setdefault('S3CanonicalUserId', secrets.token_hex(48))
        return result

    def derive_attributes(self, request: ResourceRequest, physical_id: str) -> dict:
        return {'Id': physical_id}


class CloudFrontFunctionProvider(ResourceProvider):
    """AWS::CloudFront::Function (physical id = function ARN)."""

    resource_type = 'AWS::CloudFront::Function'
    name_property = 'Name'

    def physical_id(self, request: ResourceRequest) -> Optional[str]:
        name = require_property(request, 'Name')
        require_property(request, 'FunctionCode')
        return f'arn:{_partition(request.region)}:cloudfront::{request.account_id}:function/{name}'

    def derive_attributes(self, request: ResourceRequest, physical_id: str) -> dict:
        stage = 'LIVE' if request.properties.get('AutoPublish') in (True, 'true') else 'DEVELOPMENT'
        return {
            'FunctionARN': physical_id,
            'Stage': stage,
        }


class Route53RecordSetProvider(ResourceProvider):
    """AWS::Route53::RecordSet (physical id = record name)."""

    resource_type = 'AWS::Route53::RecordSet'

    def physical_id(self, request: ResourceRequest) -> Optional[str]:
        require_property(request, 'HostedZoneId')
        require_property(request, 'Type')
        return str(require_property(request, 'Name'))


class CertificateProvider(ResourceProvider):
    """AWS::CertificateManager::Certificate (physical id = certificate ARN)."""

    resource_type = 'AWS::CertificateManager::Certificate'

    def physical_id(self, request: ResourceRequest) -> Optional[str]:
        require_property(request, 'DomainName')
        region = request.region
        return f'arn:{_partition(region)}:acm:{region}:{request.account_id}:certificate/{uuid.uuid4()}'


class IAMUserProvider(ResourceProvider):
    """AWS::IAM::User (physical id = user name)."""

    resource_type = 'AWS::IAM::User'
    name_property = 'UserName'

    def physical_id(self, request: ResourceRequest) -> Optional[str]:
        return super().physical_id(request) or _generated_name(request, 64)

    def derive_attributes(self, request: ResourceRequest, physical_id: str) -> dict:
        path = request.properties.get('Path', '/')
        return {'Arn': f'arn:{_partition(request.region)}:iam::{request.account_id}:user{path}{physical_id}'}


class IAMAccessKeyProvider(ResourceProvider):
    """AWS::IAM::AccessKey (physical id = access key id).

    The secret is only issued on create; updates keep the recorded one.
    """

    resource_type = 'AWS::IAM::AccessKey'

    def physical_id(self, request: ResourceRequest) -> Optional[str]:
        require_property(request, 'UserName')
        return _random_id('AKIA', 16)

    def create(self, request: ResourceRequest) -> ProviderResult:
        result = super().create(request)
        result.attributes.setdefault(
            'SecretAccessKey',
            ''.join(secrets.choice(string.ascii_letters + string.digits + '/+') for _ in range(40)),
        )
        return result


TYPED_PROVIDERS = (
    S3BucketProvider,
    S3BucketPolicyProvider,
    CloudFrontDistributionProvider,
    CloudFrontOriginAccessIdentityProvider,
    CloudFrontFunctionProvider,
    Route53RecordSetProvider,
    CertificateProvider,
    IAMUserProvider,
    IAMAccessKeyProvider,
)
