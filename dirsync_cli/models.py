"""Pydantic models for representing records."""

import enum
from typing import Any, Dict, List, Optional
from uuid import UUID

import humps
from pydantic import BaseModel, ConfigDict, SecretStr, field_validator, model_validator

from dirsync_cli.constants import ENTITIES, GROUP_TYPE_UNIFIED, POLICY_STATES
from dirsync_cli.utils import unique


class GraphModel(BaseModel):
    """Base class for records as exchanged with the directory API.

    Attributes use snake case in Python and camel case on the wire.
    """

    model_config = ConfigDict(alias_generator=humps.camelize, populate_by_name=True)


class AppRole(GraphModel):
    """An app role of an application."""

    #: The caller-assigned UUID of the role.
    id: str
    #: Member types that can be assigned the role, ``User`` and/or ``Application``.
    allowed_member_types: List[str] = []
    #: Description of the role.
    description: Optional[str] = None
    #: Display name of the role.
    display_name: Optional[str] = None
    #: Whether the role is enabled; roles must be disabled before removal.
    is_enabled: bool = True
    #: Value of the ``roles`` claim.
    value: Optional[str] = None

    @field_validator("id")
    @classmethod
    def _normalize_id(cls, value: str) -> str:
        return str(UUID(value))


class PermissionScope(GraphModel):
    """A delegated permission (OAuth2 permission scope) of an application."""

    #: The caller-assigned UUID of the scope.
    id: str
    #: Description shown to administrators on consent.
    admin_consent_description: Optional[str] = None
    #: Display name shown to administrators on consent.
    admin_consent_display_name: Optional[str] = None
    #: Whether the scope is enabled; scopes must be disabled before removal.
    is_enabled: bool = True
    #: Who may consent, ``User`` or ``Admin``.
    type: str = "User"
    #: Description shown to users on consent.
    user_consent_description: Optional[str] = None
    #: Display name shown to users on consent.
    user_consent_display_name: Optional[str] = None
    #: Value of the ``scp`` claim.
    value: Optional[str] = None

    @field_validator("id")
    @classmethod
    def _normalize_id(cls, value: str) -> str:
        return str(UUID(value))


class ApplicationApi(GraphModel):
    """The ``api`` block of an application."""

    oauth2_permission_scopes: Optional[List[PermissionScope]] = None


class Application(GraphModel):
    """An application registration."""

    id: Optional[str] = None
    #: The application (client) ID, assigned by the server.
    app_id: Optional[str] = None
    display_name: Optional[str] = None
    sign_in_audience: Optional[str] = None
    identifier_uris: Optional[List[str]] = None
    app_roles: Optional[List[AppRole]] = None
    api: Optional[ApplicationApi] = None


class Group(GraphModel):
    """A group."""

    id: Optional[str] = None
    display_name: Optional[str] = None
    description: Optional[str] = None
    mail_enabled: Optional[bool] = None
    mail_nickname: Optional[str] = None
    security_enabled: Optional[bool] = None
    group_types: Optional[List[str]] = None


class ServicePrincipal(GraphModel):
    """A service principal (enterprise application)."""

    id: Optional[str] = None
    app_id: Optional[str] = None
    display_name: Optional[str] = None
    account_enabled: Optional[bool] = None
    app_role_assignment_required: Optional[bool] = None
    tags: Optional[List[str]] = None


class PasswordProfile(GraphModel):
    """Password settings of a user; the password is write-only."""

    password: Optional[str] = None
    force_change_password_next_sign_in: Optional[bool] = None


class User(GraphModel):
    """A user."""

    id: Optional[str] = None
    user_principal_name: Optional[str] = None
    display_name: Optional[str] = None
    mail_nickname: Optional[str] = None
    mail: Optional[str] = None
    account_enabled: Optional[bool] = None
    given_name: Optional[str] = None
    surname: Optional[str] = None
    job_title: Optional[str] = None
    department: Optional[str] = None
    usage_location: Optional[str] = None
    password_profile: Optional[PasswordProfile] = None


class ConditionalAccessApplications(GraphModel):
    include_applications: List[str] = []
    exclude_applications: List[str] = []
    include_user_actions: List[str] = []


class ConditionalAccessUsers(GraphModel):
    include_users: List[str] = []
    exclude_users: List[str] = []
    include_groups: List[str] = []
    exclude_groups: List[str] = []
    include_roles: List[str] = []
    exclude_roles: List[str] = []


class ConditionalAccessLocations(GraphModel):
    include_locations: List[str] = []
    exclude_locations: List[str] = []


class ConditionalAccessPlatforms(GraphModel):
    include_platforms: List[str] = []
    exclude_platforms: List[str] = []


class ConditionalAccessConditions(GraphModel):
    """Conditions that must hold for a conditional access policy to apply."""

    applications: Optional[ConditionalAccessApplications] = None
    users: Optional[ConditionalAccessUsers] = None
    client_app_types: List[str] = []
    locations: Optional[ConditionalAccessLocations] = None
    platforms: Optional[ConditionalAccessPlatforms] = None
    sign_in_risk_levels: List[str] = []
    user_risk_levels: List[str] = []


class ConditionalAccessGrantControls(GraphModel):
    #: ``AND`` or ``OR``.
    operator: str
    #: E.g., ``block``, ``mfa``.
    built_in_controls: List[str] = []


class ApplicationEnforcedRestrictionsSessionControl(GraphModel):
    is_enabled: bool = False


class CloudAppSecuritySessionControl(GraphModel):
    is_enabled: bool = False
    cloud_app_security_type: Optional[str] = None


class SignInFrequencySessionControl(GraphModel):
    is_enabled: bool = False
    #: ``hours`` or ``days``.
    type: Optional[str] = None
    value: Optional[int] = None


class ConditionalAccessSessionControls(GraphModel):
    application_enforced_restrictions: Optional[ApplicationEnforcedRestrictionsSessionControl] = None
    cloud_app_security: Optional[CloudAppSecuritySessionControl] = None
    sign_in_frequency: Optional[SignInFrequencySessionControl] = None


class ConditionalAccessPolicy(GraphModel):
    """A conditional access policy."""

    id: Optional[str] = None
    display_name: Optional[str] = None
    state: Optional[str] = None
    conditions: Optional[ConditionalAccessConditions] = None
    grant_controls: Optional[ConditionalAccessGrantControls] = None
    session_controls: Optional[ConditionalAccessSessionControls] = None


class Domain(GraphModel):
    """A domain; the ID is the fully qualified domain name."""

    id: Optional[str] = None
    authentication_type: Optional[str] = None
    is_default: Optional[bool] = None
    is_verified: Optional[bool] = None
    supported_services: Optional[List[str]] = None


def normalize_object_ids(value: Optional[List[str]]) -> Optional[List[str]]:
    """Normalize a list of directory object IDs (GUIDs) for comparison.

    ``None`` is kept as it means that the relation is not managed.
    """
    if value is None:
        return None
    return unique(x.strip().lower() for x in value)


class GroupConfig(BaseModel):
    """Configuration of a group resource."""

    #: The object ID, ``None`` before creation.
    id: Optional[str] = None
    #: The display name of the group.
    display_name: str
    #: The description of the group.
    description: Optional[str] = None
    #: Whether the group has a shared mailbox.
    mail_enabled: bool = False
    #: Whether the group is a security group.
    security_enabled: bool = False
    #: Group types, only ``Unified`` is supported; changing forces a new group.
    types: List[str] = []
    #: Owner object IDs, ``None`` if not managed.
    owners: Optional[List[str]] = None
    #: Member object IDs, ``None`` if not managed.
    members: Optional[List[str]] = None
    #: Fail if another group with the same display name exists.
    prevent_duplicate_names: bool = False

    @field_validator("display_name")
    @classmethod
    def _check_display_name(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("display_name must not be empty")
        return value

    @field_validator("types")
    @classmethod
    def _check_types(cls, value: List[str]) -> List[str]:
        for group_type in value:
            if group_type != GROUP_TYPE_UNIFIED:
                raise ValueError(f"unsupported group type {group_type!r}")
        return unique(value)

    @field_validator("owners", "members")
    @classmethod
    def _normalize_relations(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        return normalize_object_ids(value)


class ApplicationConfig(BaseModel):
    """Configuration of an application resource."""

    #: The object ID, ``None`` before creation.
    id: Optional[str] = None
    #: The application (client) ID, computed.
    application_id: Optional[str] = None
    #: The display name of the application.
    display_name: str
    #: Which account types may sign in.
    sign_in_audience: str = "AzureADMyOrg"
    #: The identifier URIs.
    identifier_uris: List[str] = []
    #: The app roles, replaced as a whole on change.
    app_roles: List[AppRole] = []
    #: The delegated permission scopes, replaced as a whole on change.
    oauth2_permission_scopes: List[PermissionScope] = []
    #: Owner object IDs, ``None`` if not managed.
    owners: Optional[List[str]] = None
    #: Fail if another application with the same display name exists.
    prevent_duplicate_names: bool = False

    @field_validator("owners")
    @classmethod
    def _normalize_owners(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        return normalize_object_ids(value)

    @model_validator(mode="after")
    def _check_roles_and_scopes(self) -> "ApplicationConfig":
        for label, items in (
            ("app role", self.app_roles),
            ("permission scope", self.oauth2_permission_scopes),
        ):
            ids = [item.id for item in items]
            if len(ids) != len(set(ids)):
                raise ValueError(f"duplicate {label} ID")
        values = [x.value for x in self.app_roles if x.value]
        values += [x.value for x in self.oauth2_permission_scopes if x.value]
        duplicates = sorted({v for v in values if values.count(v) > 1})
        if duplicates:
            raise ValueError(
                f"app role and permission scope values must be unique, duplicates: {duplicates}"
            )
        return self


class ServicePrincipalConfig(BaseModel):
    """Configuration of a service principal resource."""

    #: The object ID, ``None`` before creation.
    id: Optional[str] = None
    #: The application (client) ID; changing forces a new service principal.
    application_id: str
    #: The display name, taken from the application.
    display_name: Optional[str] = None
    #: Whether users can sign in to the application.
    account_enabled: bool = True
    #: Whether users need an app role assignment to obtain tokens.
    app_role_assignment_required: bool = False
    #: Tags, e.g., ``WindowsAzureActiveDirectoryIntegratedApp``.
    tags: List[str] = []
    #: Owner object IDs, ``None`` if not managed.
    owners: Optional[List[str]] = None

    @field_validator("owners")
    @classmethod
    def _normalize_owners(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        return normalize_object_ids(value)


class UserConfig(BaseModel):
    """Configuration of a user resource."""

    #: The object ID, ``None`` before creation.
    id: Optional[str] = None
    user_principal_name: str
    display_name: str
    #: Defaults to the local part of the user principal name.
    mail_nickname: Optional[str] = None
    #: The primary mail address, computed.
    mail: Optional[str] = None
    account_enabled: bool = True
    #: The initial password; never read back.
    password: Optional[SecretStr] = None
    force_password_change: bool = False
    given_name: Optional[str] = None
    surname: Optional[str] = None
    job_title: Optional[str] = None
    department: Optional[str] = None
    usage_location: Optional[str] = None

    @field_validator("user_principal_name")
    @classmethod
    def _check_upn(cls, value: str) -> str:
        if "@" not in value:
            raise ValueError(f"user_principal_name must contain a domain: {value!r}")
        return value


class ConditionalAccessPolicyConfig(BaseModel):
    """Configuration of a conditional access policy resource."""

    #: The object ID, ``None`` before creation.
    id: Optional[str] = None
    display_name: str
    state: str
    conditions: ConditionalAccessConditions
    grant_controls: ConditionalAccessGrantControls
    session_controls: Optional[ConditionalAccessSessionControls] = None

    @field_validator("state")
    @classmethod
    def _check_state(cls, value: str) -> str:
        if value not in POLICY_STATES:
            raise ValueError(f"state must be one of {POLICY_STATES}, got {value!r}")
        return value


class DomainConfig(BaseModel):
    """Configuration of a domain resource."""

    #: The domain name once the domain exists.
    id: Optional[str] = None
    #: The fully qualified domain name; changing forces a new domain.
    domain_name: str
    #: ``Managed`` or ``Federated``.
    authentication_type: str = "Managed"
    is_default: bool = False
    #: Whether ownership was verified, computed.
    is_verified: Optional[bool] = None
    supported_services: List[str] = []

    @field_validator("domain_name")
    @classmethod
    def _normalize_domain_name(cls, value: str) -> str:
        return value.strip().lower()


@enum.unique
class StateOperation(enum.Enum):
    """Operation to perform on a resource."""

    #: Create a new object.
    CREATE = "CREATE"
    #: Update an object's attributes and relations.
    UPDATE = "UPDATE"
    #: Delete and create again as an immutable attribute changed.
    REPLACE = "REPLACE"
    #: Delete an object.
    DELETE = "DELETE"


class ResourceBlock(BaseModel):
    """A resource in the desired state file."""

    #: The entity type, e.g., ``group``.
    type: str
    #: The name of the block, unique per type.
    name: str
    #: The configuration, validated by the resource for ``type``.
    config: Dict[str, Any]

    @field_validator("type")
    @classmethod
    def _check_type(cls, value: str) -> str:
        if value not in ENTITIES:
            raise ValueError(f"unknown resource type {value!r}, expected one of {ENTITIES}")
        return value

    @property
    def address(self) -> str:
        return f"{self.type}.{self.name}"


class DesiredState(BaseModel):
    """The desired state as loaded from the configuration file."""

    resources: List[ResourceBlock]

    @model_validator(mode="after")
    def _check_unique_addresses(self) -> "DesiredState":
        addresses = [block.address for block in self.resources]
        duplicates = sorted({a for a in addresses if addresses.count(a) > 1})
        if duplicates:
            raise ValueError(f"duplicate resource blocks: {duplicates}")
        return self


class ResourceOp(BaseModel):
    """Operation to perform on a resource."""

    #: The operation to perform.
    operation: StateOperation
    #: The address of the resource block.
    address: str
    #: The entity type.
    entity_type: str
    #: The configuration to apply. Secrets stay ``SecretStr`` objects so that
    #: they can be applied in-process; JSON output shows them masked.
    config: Dict[str, Any]
    #: The diff to update, field name to desired value.
    diff: Dict[str, Any]


class OperationsContainer(BaseModel):
    """Container for all operations to perform."""

    #: Operations to perform on resources.
    resource_ops: List[ResourceOp]


class ObservedState(BaseModel):
    """State as read from the directory."""

    #: Mapping from resource address to the observed configuration, ``None`` if gone.
    resources: Dict[str, Optional[Dict[str, Any]]]
