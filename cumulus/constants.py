# Value of the ManagedBy tag put on every cloud resource
MANAGED_BY = "cumulus"

# The environment variable holding the default state backend url
STATE_BACKEND_ENV_VAR = "CUMULUS_STATE_BACKEND"

# The environment variable holding the default region of the state backend
REGION_ENV_VAR = "CUMULUS_REGION"

DEFAULT_STATE_BACKEND = "s3://cumulus-states"
DEFAULT_BACKEND_REGION = "us-east-1"
DEFAULT_LOCK_TABLE = "cumulus-state-locks"

# Objects in the state bucket are stored under this prefix
STATE_PREFIX = "clusters/"

# Noncurrent state versions are expired after this many days
STATE_VERSION_RETENTION_DAYS = 30
# Incomplete multipart uploads are aborted after this many days
ABORT_MULTIPART_DAYS = 7

# Cluster defaults
DEFAULT_K8S_VERSION = "1.30"
DEFAULT_VPC_CIDR = "10.0.0.0/16"
DEFAULT_AZ_COUNT = 3
DEFAULT_NODE_INSTANCE_TYPE = "t3.medium"
DEFAULT_NODE_MIN_SIZE = 1
DEFAULT_NODE_MAX_SIZE = 5
DEFAULT_NODE_DESIRED_SIZE = 3
DEFAULT_NODE_DISK_SIZE = 30

# Polling intervals and timeouts, in seconds
IAM_PROPAGATION_SECONDS = 10

BUCKET_WAIT_INTERVAL = 5
BUCKET_WAIT_TIMEOUT = 2 * 60
TABLE_WAIT_INTERVAL = 5
TABLE_WAIT_TIMEOUT = 2 * 60

VPC_WAIT_INTERVAL = 5
VPC_WAIT_TIMEOUT = 2 * 60
NAT_WAIT_INTERVAL = 15
NAT_WAIT_TIMEOUT = 5 * 60

CLUSTER_WAIT_INTERVAL = 30
CLUSTER_ACTIVE_TIMEOUT = 20 * 60
CLUSTER_DELETE_TIMEOUT = 15 * 60
CLUSTER_UPDATE_TIMEOUT = 40 * 60
NODEGROUP_WAIT_INTERVAL = 30
NODEGROUP_ACTIVE_TIMEOUT = 15 * 60
NODEGROUP_DELETE_TIMEOUT = 15 * 60
