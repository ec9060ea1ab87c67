"""Constants used across the controller."""

# API group of the tracking resources
GROUP = "faros.pusher.com"
VERSION = "v1alpha1"
API_VERSION = f"{GROUP}/{VERSION}"

# Annotations on managed children
UPDATE_STRATEGY_ANNOTATION = f"{GROUP}/update-strategy"
LAST_APPLIED_ANNOTATION = f"{GROUP}/last-applied"

# Finalizer kopf puts on tracking resources for the delete fallback
OPERATOR_FINALIZER = f"{GROUP}/gittrackobject-controller"

# Finalizer the API server adds for propagationPolicy=Foreground
FOREGROUND_DELETION_FINALIZER = "foregroundDeletion"

# Status condition
IN_SYNC_CONDITION = "InSync"

# Condition reasons
REASON_SUCCESS = "Success"
REASON_ERROR_UNMARSHALLING_DATA = "ErrorUnmarshallingData"
REASON_ERROR_UNSUPPORTED_KIND = "ErrorUnsupportedKind"
REASON_ERROR_CREATING_CHILD = "ErrorCreatingChild"
REASON_ERROR_APPLYING_CHILD = "ErrorApplyingChild"

# Event reasons
EVENT_CREATE_STARTED = "CreateStarted"
EVENT_CREATE_SUCCESSFUL = "CreateSuccessful"
EVENT_CREATE_FAILED = "CreateFailed"
EVENT_UPDATE_STARTED = "UpdateStarted"
EVENT_UPDATE_SUCCESSFUL = "UpdateSuccessful"
EVENT_UPDATE_FAILED = "UpdateFailed"
EVENT_UNMARSHAL_FAILED = "UnmarshalFailed"
EVENT_DELETE_SUCCESSFUL = "DeleteSuccessful"
EVENT_DELETE_FAILED = "DeleteFailed"

# Metadata the API server owns; never part of a desired document
SERVER_METADATA_FIELDS = (
    "uid",
    "resourceVersion",
    "generation",
    "creationTimestamp",
    "deletionTimestamp",
    "deletionGracePeriodSeconds",
    "managedFields",
    "selfLink",
)

# Child resources watched so that changes to them reconcile their owner
# ("group/version/plural", or "v1/plural" for the core group)
DEFAULT_CHILD_RESOURCES = (
    "apps/v1/deployments",
    "apps/v1/statefulsets",
    "apps/v1/daemonsets",
    "v1/services",
    "v1/configmaps",
    "v1/serviceaccounts",
    "rbac.authorization.k8s.io/v1/roles",
    "rbac.authorization.k8s.io/v1/rolebindings",
    "rbac.authorization.k8s.io/v1/clusterroles",
    "rbac.authorization.k8s.io/v1/clusterrolebindings",
)
