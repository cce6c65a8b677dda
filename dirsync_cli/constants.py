#: Default base URL of the directory API.
DEFAULT_SERVER_URL = "https://graph.microsoft.com/v1.0/"
#: Default timeout for remote calls in seconds (5 minutes).
DEFAULT_TIMEOUT = 5 * 60

ENTITY_GROUP = "group"
ENTITY_APPLICATION = "application"
ENTITY_SERVICE_PRINCIPAL = "service_principal"
ENTITY_USER = "user"
ENTITY_CONDITIONAL_ACCESS_POLICY = "conditional_access_policy"
ENTITY_DOMAIN = "domain"
ENTITIES = (
    ENTITY_APPLICATION,
    ENTITY_CONDITIONAL_ACCESS_POLICY,
    ENTITY_DOMAIN,
    ENTITY_GROUP,
    ENTITY_SERVICE_PRINCIPAL,
    ENTITY_USER,
)

#: URL path of the collection for each entity type.
COLLECTION_PATHS = {
    ENTITY_GROUP: "groups",
    ENTITY_APPLICATION: "applications",
    ENTITY_SERVICE_PRINCIPAL: "servicePrincipals",
    ENTITY_USER: "users",
    ENTITY_CONDITIONAL_ACCESS_POLICY: "identity/conditionalAccess/policies",
    ENTITY_DOMAIN: "domains",
}

RELATION_OWNERS = "owners"
RELATION_MEMBERS = "members"

#: Relations that accept several references in one ``@odata.bind`` update.
BATCH_BIND_RELATIONS = {
    (ENTITY_GROUP, RELATION_OWNERS),
    (ENTITY_GROUP, RELATION_MEMBERS),
}
#: Maximal number of references per ``@odata.bind`` update.
BIND_BATCH_SIZE = 20

#: Error message fragment returned when adding an existing reference.
MSG_REFERENCE_EXISTS = "already exist"

#: The only supported group type.
GROUP_TYPE_UNIFIED = "Unified"

#: Valid states of a conditional access policy.
POLICY_STATES = ("enabled", "disabled", "enabledForReportingButNotEnforced")
