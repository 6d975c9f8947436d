"""
AWS Identity Store client.

SCIM cannot enumerate users, groups and memberships reliably, so listings and
membership-graph operations go through the Identity Store API via boto3.
Botocore's retry configuration handles throttling; every other ClientError is
translated into the error kinds from ``target.base``.
"""

import logging
from typing import Dict, List, Any, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError, BotoCoreError

from ldap_scim_sync.batching import chunked
from ldap_scim_sync.models import TargetUser, TargetGroup
from ldap_scim_sync.pagination import drain_pages
from ldap_scim_sync.retry import TRANSIENT_STATUS_CODES
from ldap_scim_sync.target.base import (
    TargetAPIError, TargetAuthenticationError, NotFoundError, ConflictError,
    TransientError, ProtocolError
)

logger = logging.getLogger(__name__)

ERROR_CODE_KINDS = {
    'ResourceNotFoundException': NotFoundError,
    'ConflictException': ConflictError,
    'ThrottlingException': TransientError,
    'InternalServerException': TransientError,
    'ServiceQuotaExceededException': TransientError,
    'AccessDeniedException': TargetAuthenticationError,
    'UnrecognizedClientException': TargetAuthenticationError,
    'ExpiredTokenException': TargetAuthenticationError,
}


def translate_client_error(error: ClientError, operation: str) -> TargetAPIError:
    """Map a botocore ClientError onto an error kind, keeping the HTTP status."""
    details = error.response.get('Error', {})
    code = details.get('Code', '')
    status_code = error.response.get('ResponseMetadata', {}).get('HTTPStatusCode')
    message = f"{operation} failed: {code} {details.get('Message', '')}".strip()

    kind = ERROR_CODE_KINDS.get(code)
    if kind is None:
        kind = TransientError if status_code in TRANSIENT_STATUS_CODES else ProtocolError
    return kind(message, status_code, operation)


def user_from_identity_store(item: Dict[str, Any]) -> Optional[TargetUser]:
    """
    Convert an Identity Store user into a TargetUser.

    Returns None when the record lacks a usable primary email.
    """
    emails = []
    for email in item.get('Emails') or []:
        if not email.get('Value') or not email.get('Type'):
            continue
        emails.append({
            'value': email['Value'],
            'type': email['Type'],
            'primary': email.get('Primary', False),
        })

    addresses = [{'type': address['Type']} for address in item.get('Addresses') or []
                 if address.get('Type')]

    name = item.get('Name') or {}
    external_ids = item.get('ExternalIds') or []

    username = item.get('UserName', '')
    if not username and emails:
        username = emails[0]['value']
    if not username:
        return None

    return TargetUser(
        username=username,
        given_name=name.get('GivenName', ''),
        family_name=name.get('FamilyName', ''),
        display_name=item.get('DisplayName', ''),
        id=item.get('UserId'),
        external_id=external_ids[0].get('Id') if external_ids else None,
        emails=emails,
        addresses=addresses,
    )


def group_from_identity_store(item: Dict[str, Any]) -> TargetGroup:
    external_ids = item.get('ExternalIds') or []
    return TargetGroup(
        display_name=item.get('DisplayName', ''),
        id=item.get('GroupId'),
        external_id=external_ids[0].get('Id') if external_ids else None,
    )


class IdentityStoreClient:
    """
    Paginated listings and membership operations against one identity store.

    Args:
        config: ``identity_store`` section (``identity_store_id``, ``region``,
            optional ``max_attempts``, ``page_size``)
        client: Preconfigured boto3 client; one is created when omitted
    """

    def __init__(self, config: Dict[str, Any], client=None):
        self.identity_store_id = config['identity_store_id']
        self.region = config.get('region')
        self.page_size = config.get('page_size', 100)

        if client is None:
            boto_config = BotoConfig(
                connect_timeout=config.get('connect_timeout', 10),
                read_timeout=config.get('read_timeout', 30),
                retries={'max_attempts': config.get('max_attempts', 5), 'mode': 'standard'},
            )
            client = boto3.client('identitystore', region_name=self.region, config=boto_config)

        self.client = client
        logger.info(f"Initialized Identity Store client for {self.identity_store_id} ({self.region})")

    def _call(self, operation: str, **kwargs) -> Dict[str, Any]:
        method = getattr(self.client, operation)
        try:
            return method(IdentityStoreId=self.identity_store_id, **kwargs)
        except ClientError as e:
            raise translate_client_error(e, operation) from e
        except BotoCoreError as e:
            raise TransientError(f"{operation} failed: {e}", operation=operation) from e

    def _list(self, operation: str, result_key: str, **kwargs) -> List[Dict[str, Any]]:
        def fetch_page(token):
            params = dict(kwargs, MaxResults=self.page_size)
            if token:
                params['NextToken'] = token
            response = self._call(operation, **params)
            return response.get(result_key, []), response.get('NextToken')

        return drain_pages(fetch_page, description=operation)

    def list_users(self) -> List[TargetUser]:
        """List every user in the identity store."""
        users = []
        for item in self._list('list_users', 'Users'):
            user = user_from_identity_store(item)
            if user is None:
                logger.warning(f"Skipping identity store user {item.get('UserId')} without a primary email")
                continue
            users.append(user)

        logger.info(f"Retrieved {len(users)} users from identity store")
        return users

    def list_groups(self) -> List[TargetGroup]:
        """List every group in the identity store."""
        groups = [group_from_identity_store(item) for item in self._list('list_groups', 'Groups')]
        logger.info(f"Retrieved {len(groups)} groups from identity store")
        return groups

    def list_groups_page(self) -> List[TargetGroup]:
        """Fetch a single page of groups; used by the health check."""
        response = self._call('list_groups', MaxResults=1)
        return [group_from_identity_store(item) for item in response.get('Groups', [])]

    def list_group_memberships(self, group_id: str) -> List[str]:
        """Return the user ids that are members of a group."""
        memberships = self._list('list_group_memberships', 'GroupMemberships', GroupId=group_id)
        return [m['MemberId']['UserId'] for m in memberships if m.get('MemberId', {}).get('UserId')]

    def get_group_membership_id(self, group_id: str, user_id: str) -> str:
        response = self._call('get_group_membership_id', GroupId=group_id, MemberId={'UserId': user_id})
        return response['MembershipId']

    def create_group_membership(self, group_id: str, user_id: str) -> str:
        """
        Add a user to a group.

        Returns:
            The new membership id

        Raises:
            ConflictError: The membership already exists
        """
        response = self._call('create_group_membership', GroupId=group_id, MemberId={'UserId': user_id})
        logger.info(f"Added user {user_id} to group {group_id}")
        return response['MembershipId']

    def delete_group_membership(self, membership_id: str):
        self._call('delete_group_membership', MembershipId=membership_id)
        logger.info(f"Deleted group membership {membership_id}")

    def is_member_in_groups(self, user_id: str, group_ids: List[str]) -> Dict[str, bool]:
        """
        Check a user's membership in many groups.

        The API accepts at most 100 group ids per call; larger lists are split.

        Returns:
            Mapping of group id to membership flag
        """
        result = {}
        for chunk in chunked(group_ids):
            response = self._call('is_member_in_groups', MemberId={'UserId': user_id}, GroupIds=chunk)
            for entry in response.get('Results', []):
                result[entry['GroupId']] = bool(entry.get('MembershipExists'))
        return result

    def delete_user(self, user_id: str):
        self._call('delete_user', UserId=user_id)
        logger.info(f"Deleted identity store user {user_id}")

    def delete_group(self, group_id: str):
        self._call('delete_group', GroupId=group_id)
        logger.info(f"Deleted identity store group {group_id}")
