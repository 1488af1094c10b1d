"""
Protocol definitions for the remote services acctl talks to.

The control plane only needs a few calls from each service. These protocols
follow the shape of the boto3 clients so that real clients satisfy them
structurally, while tests can substitute small in-memory fakes.
"""

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class IAMClient(Protocol):
    """
    Per-account IAM API used to persist account control information.

    Implemented by boto3 ``iam`` clients. A missing role is reported as
    ``botocore.exceptions.ClientError`` with code ``NoSuchEntity``.
    """

    def get_role(self, *, RoleName: str) -> dict[str, Any]: ...

    def create_role(
        self,
        *,
        RoleName: str,
        AssumeRolePolicyDocument: str,
        Description: str = ...,
        Path: str = ...,
    ) -> dict[str, Any]: ...

    def update_role_description(
        self,
        *,
        RoleName: str,
        Description: str,
    ) -> dict[str, Any]: ...

    def delete_role(self, *, RoleName: str) -> dict[str, Any]: ...


@runtime_checkable
class OrgsClient(Protocol):
    """
    Organizations API used to create new accounts.

    Implemented by boto3 ``organizations`` clients.
    """

    def create_account(self, *, AccountName: str, Email: str) -> dict[str, Any]: ...

    def describe_create_account_status(
        self,
        *,
        CreateAccountRequestId: str,
    ) -> dict[str, Any]: ...

    def describe_account(self, *, AccountId: str) -> dict[str, Any]: ...


@runtime_checkable
class CredsProvider(Protocol):
    """
    Source of temporary credentials for one account.

    ``get()`` returns a mapping with ``AccessKeyId``, ``SecretAccessKey``,
    ``SessionToken`` and ``Expiration``, renewing cached credentials as
    needed. ``reset()`` forces the next ``get()`` to renew.
    """

    def get(self) -> dict[str, Any]: ...

    def reset(self) -> None: ...
