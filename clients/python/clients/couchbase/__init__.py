from .config import (
    USERNAME,
    DEFAULT_BUCKET_NAME,
    HOST,
    PROTOCOL,
    auth,
    configuration_errors,
    get_cluster,
    check_connection
)
from .keyspace import (
    Keyspace,
    get_keyspace,
)
from .base_model import (
    BaseModelCouchbase,
    BaseCouchbaseEntityData,
    DataT,
    T
)

# External re-exports used by the operations layer
from couchbase.exceptions import (
    AmbiguousTimeoutException,
    CASMismatchException,
    DocumentExistsException,
    DocumentNotFoundException,
    TimeoutException,
    UnAmbiguousTimeoutException,
)
