"""
Shared module to hold constant values for the library
"""

# Log config annotations
LOG_DEFAULT_LEVEL_NAME = "upgr8.example.com/log-default-level"
LOG_FILTERS_NAME = "upgr8.example.com/log-filters"
LOG_THREAD_ID_NAME = "upgr8.example.com/log-thread-id"
LOG_JSON_NAME = "upgr8.example.com/log-json"

# Labels applied to every object created on behalf of a ManagedApplication
APPLICATION_LABEL = "upgr8.example.com/application"
VERSION_LABEL = "upgr8.example.com/version"
ROLE_LABEL = "upgr8.example.com/role"

# Values for the role label
ROLE_PRIMARY = "primary"
ROLE_CANARY = "canary"
ROLE_MIGRATION = "migration"

# Suffixes used to derive the names of rollout artifacts from the workload name
CANARY_SUFFIX = "-canary"
MIGRATION_INFIX = "-migrate-"

# Kubernetes names are DNS-1123 labels
MAX_NAME_LENGTH = 63

# Default namespace if none given
DEFAULT_NAMESPACE = "default"

# Delimiter used for nested dict keys
NESTED_DICT_DELIM = "."
