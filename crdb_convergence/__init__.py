from .assertions import (
    require_cluster_decommissioned,
    require_cluster_initialized,
    require_cluster_ready,
    require_database_to_function,
    require_database_to_function_insecure,
    require_db_containers_use_image,
    require_decommission_node,
    require_downgrade_option_set,
    require_number_of_pvcs,
    require_pvcs_resized,
)
from .cluster import ClusterSpec
from .errors import (
    ConvergenceError,
    PollAbortedError,
    PollCancelledError,
    PollTimeoutError,
)
from .poller import CancelToken, ConvergencePoller, Outcome, PollSpec

__version__ = "0.1.0"
