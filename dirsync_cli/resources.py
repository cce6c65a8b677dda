"""Create/read/update/delete lifecycle of the resources.

Each resource class sequences the accessor, reconciler, replacer, and guard
calls for one entity type.
"""

import sys
import threading
from typing import Any, Dict, List, Optional, Tuple, Type
from uuid import uuid4

from pydantic import BaseModel
from rich.console import Console

from dirsync_cli.config import GraphSettings
from dirsync_cli.constants import (
    ENTITY_APPLICATION,
    ENTITY_CONDITIONAL_ACCESS_POLICY,
    ENTITY_DOMAIN,
    ENTITY_GROUP,
    ENTITY_SERVICE_PRINCIPAL,
    ENTITY_USER,
    GROUP_TYPE_UNIFIED,
    RELATION_MEMBERS,
    RELATION_OWNERS,
)
from dirsync_cli.exceptions import NotFoundError, RemoteFailure
from dirsync_cli.locks import NamedLocks
from dirsync_cli.models import (
    Application,
    ApplicationApi,
    ApplicationConfig,
    ConditionalAccessPolicy,
    ConditionalAccessPolicyConfig,
    Domain,
    DomainConfig,
    GraphModel,
    Group,
    GroupConfig,
    PasswordProfile,
    ServicePrincipal,
    ServicePrincipalConfig,
    User,
    UserConfig,
)
from dirsync_cli.reconcile import (
    APP_ROLES,
    PERMISSION_SCOPES,
    CollectionReplacer,
    DuplicateNameGuard,
    RelationReconciler,
)
from dirsync_cli.rest import EntityAccessor, GraphClient
from dirsync_cli.utils import unique

#: The rich console to use for output.
console_err = Console(file=sys.stderr)


class ProviderContext:
    """State shared by the resources of one run, passed explicitly."""

    def __init__(
        self,
        client: Optional[GraphClient],
        caller_id: str,
        locks: Optional[NamedLocks] = None,
        cancel: Optional[threading.Event] = None,
    ):
        #: The API client, ``None`` if every resource gets its own accessor.
        self.client = client
        #: Object ID of the acting principal.
        self.caller_id = caller_id.lower()
        #: Locks serializing updates of the same entity.
        self.locks = locks or NamedLocks()
        #: Set to keep reconciliations from starting their next step.
        self.cancel = cancel or threading.Event()

    @staticmethod
    def from_settings(settings: GraphSettings) -> "ProviderContext":
        return ProviderContext(GraphClient(settings), settings.caller_object_id)

    def close(self):
        if self.client:
            self.client.close()


class Resource:
    """Base class for the lifecycle of one entity type."""

    #: The entity type, e.g., ``group``.
    entity_type: str
    #: The wire model of the entity.
    model: Type[GraphModel]
    #: The configuration model of the resource.
    config_model: Type[BaseModel]
    #: Configuration fields whose change requires a new entity.
    force_new: Tuple[str, ...] = ()
    #: Configuration fields that are not read back from the API.
    write_only: Tuple[str, ...] = ()
    #: Relation fields, unordered sets of object IDs.
    set_fields: Tuple[str, ...] = ()
    #: Whether the caller is made owner while the entity is created.
    bootstrap_owner: bool = False

    def __init__(self, ctx: ProviderContext, accessor: Optional[EntityAccessor] = None):
        #: The context of the run.
        self.ctx = ctx
        #: The accessor for the entity type.
        self.accessor = accessor or EntityAccessor(ctx.client, self.entity_type, self.model)

    @property
    def reconciler(self) -> RelationReconciler:
        return RelationReconciler(self.accessor, self.ctx.caller_id, self.ctx.cancel)

    @property
    def guard(self) -> DuplicateNameGuard:
        return DuplicateNameGuard(self.accessor)

    def parse(self, data: Dict[str, Any]) -> Any:
        """Validate configuration data from the desired state."""
        return self.config_model.model_validate(data)

    def validate(self, config: Any):
        """Check constraints between fields, raises ``ValueError``."""

    def customize_diff(self, old: Optional[Any], new: Any) -> List[str]:
        """Plan time checks of a change from ``old`` to ``new``.

        :return: The fields whose change forces replacing the entity.
        """
        self.validate(new)
        if getattr(new, "prevent_duplicate_names", False):
            self.guard.check_plan(
                new.id, old.display_name if old is not None else None, new.display_name
            )
        if old is None:
            return []
        return [name for name in self.force_new if getattr(old, name) != getattr(new, name)]

    def comparable(self, name: str, value: Any) -> Any:
        """Return ``value`` of field ``name`` in a form for comparison."""
        if name in self.set_fields and value is not None:
            return sorted(value)
        return value

    def merge(self, old: Any, new: Any) -> Any:
        """Lay the fields given in ``new`` over the observed ``old``.

        Fields not given keep their observed values so that updates do not
        clear them; relations not given stay unmanaged.
        """
        data = old.model_dump()
        for name in self.set_fields:
            data[name] = None
        for name in new.model_fields_set | set(self.write_only) | {"id"}:
            data[name] = getattr(new, name)
        return self.config_model.model_validate(data)

    def create(self, config: Any) -> Any:
        raise NotImplementedError()

    def read(self, entity_id: str) -> Optional[Any]:
        """Read the current configuration, ``None`` if removed externally."""
        entity = self.accessor.get(entity_id)
        if entity is None:
            console_err.log(f"{self.entity_type} with ID {entity_id!r} was not found")
            return None
        return self.flatten(entity)

    def flatten(self, entity: Any) -> Any:
        raise NotImplementedError()

    def update(self, config: Any) -> Any:
        """Update the entity while holding its lock, then read it back."""
        if not config.id:
            raise ValueError(f"cannot update {self.entity_type} without ID")
        with self.ctx.locks.hold(self.entity_type, config.id):
            self._update(config)
            return self._read_back(config)

    def _update(self, config: Any):
        raise NotImplementedError()

    def delete(self, entity_id: str):
        """Delete the entity, which must exist."""
        if self.accessor.get(entity_id) is None:
            raise NotFoundError(
                f"{self.entity_type} was not found",
                entity_type=self.entity_type,
                entity_id=entity_id,
                operation="delete",
            )
        console_err.log(f"+ delete {self.entity_type} {entity_id}")
        self.accessor.delete(entity_id)

    def _check_created(self, entity: GraphModel) -> str:
        if not entity.id:
            raise RemoteFailure(
                f"API returned {self.entity_type} with nil object ID",
                entity_type=self.entity_type,
                operation="create",
            )
        console_err.log(f"+ created {self.entity_type} {entity.id}")
        return entity.id

    def _create_relations(self, entity_id: str, config: Any):
        """Set owners and members of a new entity.

        With ``bootstrap_owner``, the caller was bound as owner on creation
        and is only removed after all other relations were set up, unless it
        is a desired owner itself.
        """
        reconciler = self.reconciler
        owners = getattr(config, "owners", None)
        caller = self.ctx.caller_id
        if self.bootstrap_owner:
            owners = owners or []
            reconciler.reconcile(entity_id, RELATION_OWNERS, unique(owners + [caller]), [caller])
        elif owners is not None:
            reconciler.reconcile(entity_id, RELATION_OWNERS, owners, [])
        members = getattr(config, "members", None)
        if members:
            reconciler.reconcile(entity_id, RELATION_MEMBERS, members, [])
        if self.bootstrap_owner and caller not in owners:
            reconciler.reconcile(entity_id, RELATION_OWNERS, owners, unique(owners + [caller]))

    def _read_back(self, config: Any) -> Any:
        result = self.read(config.id)
        if result is None:
            raise NotFoundError(
                f"{self.entity_type} could not be read back",
                entity_type=self.entity_type,
                entity_id=config.id,
                operation="read",
            )
        return result.model_copy(update={name: getattr(config, name) for name in self.write_only})


class GroupResource(Resource):
    """Groups with owners and members."""

    entity_type = ENTITY_GROUP
    model = Group
    config_model = GroupConfig
    force_new = ("types",)
    write_only = ("prevent_duplicate_names",)
    set_fields = ("owners", "members")
    bootstrap_owner = True

    def validate(self, config: GroupConfig):
        if not config.mail_enabled and not config.security_enabled:
            raise ValueError("at least one of mail_enabled or security_enabled must be true")
        if config.mail_enabled and GROUP_TYPE_UNIFIED not in config.types:
            raise ValueError(f"types must contain {GROUP_TYPE_UNIFIED!r} for mail-enabled groups")
        if not config.mail_enabled and GROUP_TYPE_UNIFIED in config.types:
            raise ValueError("mail_enabled must be true for unified groups")

    def create(self, config: GroupConfig) -> GroupConfig:
        self.validate(config)
        # again at apply time for names taken since planning
        if config.prevent_duplicate_names:
            self.guard.check_apply(None, config.display_name)
        properties = Group(
            display_name=config.display_name,
            description=config.description,
            group_types=config.types,
            mail_enabled=config.mail_enabled,
            mail_nickname=str(uuid4()),
            security_enabled=config.security_enabled,
        )
        group = self.accessor.create(properties, bind={RELATION_OWNERS: [self.ctx.caller_id]})
        group_id = self._check_created(group)
        self._create_relations(group_id, config)
        return self._read_back(config.model_copy(update={"id": group_id}))

    def flatten(self, group: Group) -> GroupConfig:
        return GroupConfig(
            id=group.id,
            display_name=group.display_name,
            description=group.description,
            mail_enabled=bool(group.mail_enabled),
            security_enabled=bool(group.security_enabled),
            types=group.group_types or [],
            owners=self.accessor.list_relation(group.id, RELATION_OWNERS),
            members=self.accessor.list_relation(group.id, RELATION_MEMBERS),
        )

    def _update(self, config: GroupConfig):
        if config.prevent_duplicate_names:
            self.guard.check_apply(config.id, config.display_name)
        self.accessor.update(
            config.id,
            {
                "display_name": config.display_name,
                "description": config.description,
                "mail_enabled": config.mail_enabled,
                "security_enabled": config.security_enabled,
            },
        )
        if config.members is not None:
            self.reconciler.reconcile(config.id, RELATION_MEMBERS, config.members)
        if config.owners is not None:
            self.reconciler.reconcile(config.id, RELATION_OWNERS, config.owners)


class ApplicationResource(Resource):
    """Applications with app roles, permission scopes, and owners."""

    entity_type = ENTITY_APPLICATION
    model = Application
    config_model = ApplicationConfig
    write_only = ("prevent_duplicate_names",)
    set_fields = ("owners",)
    bootstrap_owner = True

    def create(self, config: ApplicationConfig) -> ApplicationConfig:
        if config.prevent_duplicate_names:
            self.guard.check_apply(None, config.display_name)
        properties = Application(
            display_name=config.display_name,
            sign_in_audience=config.sign_in_audience,
            identifier_uris=config.identifier_uris,
            app_roles=config.app_roles,
            api=ApplicationApi(oauth2_permission_scopes=config.oauth2_permission_scopes),
        )
        app = self.accessor.create(properties, bind={RELATION_OWNERS: [self.ctx.caller_id]})
        app_id = self._check_created(app)
        self._create_relations(app_id, config)
        return self._read_back(config.model_copy(update={"id": app_id}))

    def flatten(self, app: Application) -> ApplicationConfig:
        return ApplicationConfig(
            id=app.id,
            application_id=app.app_id,
            display_name=app.display_name,
            sign_in_audience=app.sign_in_audience or "AzureADMyOrg",
            identifier_uris=app.identifier_uris or [],
            app_roles=app.app_roles or [],
            oauth2_permission_scopes=(app.api.oauth2_permission_scopes if app.api else None) or [],
            owners=self.accessor.list_relation(app.id, RELATION_OWNERS),
        )

    def _update(self, config: ApplicationConfig):
        if config.prevent_duplicate_names:
            self.guard.check_apply(config.id, config.display_name)
        self.accessor.update(
            config.id,
            {
                "display_name": config.display_name,
                "sign_in_audience": config.sign_in_audience,
                "identifier_uris": config.identifier_uris,
            },
        )
        replacer = CollectionReplacer(self.accessor, self.ctx.cancel)
        replacer.replace(config.id, APP_ROLES, config.app_roles)
        replacer.replace(config.id, PERMISSION_SCOPES, config.oauth2_permission_scopes)
        if config.owners is not None:
            self.reconciler.reconcile(config.id, RELATION_OWNERS, config.owners)


class ServicePrincipalResource(Resource):
    """Service principals of applications."""

    entity_type = ENTITY_SERVICE_PRINCIPAL
    model = ServicePrincipal
    config_model = ServicePrincipalConfig
    force_new = ("application_id",)
    set_fields = ("owners",)

    def create(self, config: ServicePrincipalConfig) -> ServicePrincipalConfig:
        properties = ServicePrincipal(
            app_id=config.application_id,
            account_enabled=config.account_enabled,
            app_role_assignment_required=config.app_role_assignment_required,
            tags=config.tags,
        )
        sp_id = self._check_created(self.accessor.create(properties))
        self._create_relations(sp_id, config)
        return self._read_back(config.model_copy(update={"id": sp_id}))

    def flatten(self, sp: ServicePrincipal) -> ServicePrincipalConfig:
        return ServicePrincipalConfig(
            id=sp.id,
            application_id=sp.app_id,
            display_name=sp.display_name,
            account_enabled=bool(sp.account_enabled),
            app_role_assignment_required=bool(sp.app_role_assignment_required),
            tags=sp.tags or [],
            owners=self.accessor.list_relation(sp.id, RELATION_OWNERS),
        )

    def _update(self, config: ServicePrincipalConfig):
        self.accessor.update(
            config.id,
            {
                "account_enabled": config.account_enabled,
                "app_role_assignment_required": config.app_role_assignment_required,
                "tags": config.tags,
            },
        )
        if config.owners is not None:
            self.reconciler.reconcile(config.id, RELATION_OWNERS, config.owners)


class UserResource(Resource):
    """Users; the password is only set on creation."""

    entity_type = ENTITY_USER
    model = User
    config_model = UserConfig
    write_only = ("password", "force_password_change")

    def create(self, config: UserConfig) -> UserConfig:
        if config.password is None:
            raise ValueError("password is required when creating a user")
        properties = User(
            user_principal_name=config.user_principal_name,
            display_name=config.display_name,
            mail_nickname=config.mail_nickname or config.user_principal_name.split("@")[0],
            account_enabled=config.account_enabled,
            given_name=config.given_name,
            surname=config.surname,
            job_title=config.job_title,
            department=config.department,
            usage_location=config.usage_location,
            password_profile=PasswordProfile(
                password=config.password.get_secret_value(),
                force_change_password_next_sign_in=config.force_password_change,
            ),
        )
        user_id = self._check_created(self.accessor.create(properties))
        return self._read_back(config.model_copy(update={"id": user_id}))

    def flatten(self, user: User) -> UserConfig:
        return UserConfig(
            id=user.id,
            user_principal_name=user.user_principal_name,
            display_name=user.display_name,
            mail_nickname=user.mail_nickname,
            mail=user.mail,
            account_enabled=bool(user.account_enabled),
            given_name=user.given_name,
            surname=user.surname,
            job_title=user.job_title,
            department=user.department,
            usage_location=user.usage_location,
        )

    def _update(self, config: UserConfig):
        fields = {
            "user_principal_name": config.user_principal_name,
            "display_name": config.display_name,
            "account_enabled": config.account_enabled,
            "given_name": config.given_name,
            "surname": config.surname,
            "job_title": config.job_title,
            "department": config.department,
            "usage_location": config.usage_location,
        }
        if config.mail_nickname:
            fields["mail_nickname"] = config.mail_nickname
        self.accessor.update(config.id, fields)


class ConditionalAccessPolicyResource(Resource):
    """Conditional access policies."""

    entity_type = ENTITY_CONDITIONAL_ACCESS_POLICY
    model = ConditionalAccessPolicy
    config_model = ConditionalAccessPolicyConfig

    def _fields(self, config: ConditionalAccessPolicyConfig) -> Dict[str, Any]:
        return {
            "display_name": config.display_name,
            "state": config.state,
            "conditions": config.conditions,
            "grant_controls": config.grant_controls,
            "session_controls": config.session_controls,
        }

    def create(self, config: ConditionalAccessPolicyConfig) -> ConditionalAccessPolicyConfig:
        properties = ConditionalAccessPolicy(**self._fields(config))
        policy_id = self._check_created(self.accessor.create(properties))
        return self._read_back(config.model_copy(update={"id": policy_id}))

    def flatten(self, policy: ConditionalAccessPolicy) -> ConditionalAccessPolicyConfig:
        return ConditionalAccessPolicyConfig(
            id=policy.id,
            display_name=policy.display_name,
            state=policy.state,
            conditions=policy.conditions,
            grant_controls=policy.grant_controls,
            session_controls=policy.session_controls,
        )

    def _update(self, config: ConditionalAccessPolicyConfig):
        self.accessor.update(config.id, self._fields(config))


class DomainResource(Resource):
    """Domains, identified by their name."""

    entity_type = ENTITY_DOMAIN
    model = Domain
    config_model = DomainConfig
    force_new = ("domain_name",)

    def create(self, config: DomainConfig) -> DomainConfig:
        properties = Domain(id=config.domain_name, authentication_type=config.authentication_type)
        domain_id = self._check_created(self.accessor.create(properties))
        # only verified domains accept these, so they are set separately
        if config.is_default or config.supported_services:
            self.accessor.update(domain_id, self._settings(config))
        return self._read_back(config.model_copy(update={"id": domain_id}))

    def _settings(self, config: DomainConfig) -> Dict[str, Any]:
        return {"is_default": config.is_default, "supported_services": config.supported_services}

    def flatten(self, domain: Domain) -> DomainConfig:
        return DomainConfig(
            id=domain.id,
            domain_name=domain.id,
            authentication_type=domain.authentication_type or "Managed",
            is_default=bool(domain.is_default),
            is_verified=domain.is_verified,
            supported_services=domain.supported_services or [],
        )

    def _update(self, config: DomainConfig):
        fields = self._settings(config)
        fields["authentication_type"] = config.authentication_type
        self.accessor.update(config.id, fields)


#: The resource classes by entity type.
SUPPORTED_RESOURCES: Dict[str, Type[Resource]] = {
    cls.entity_type: cls
    for cls in (
        ApplicationResource,
        ConditionalAccessPolicyResource,
        DomainResource,
        GroupResource,
        ServicePrincipalResource,
        UserResource,
    )
}


def build_resources(ctx: ProviderContext) -> Dict[str, Resource]:
    """Build one resource of every supported type."""
    return {entity_type: cls(ctx) for entity_type, cls in SUPPORTED_RESOURCES.items()}
