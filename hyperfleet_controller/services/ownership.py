from datetime import datetime

from hyperfleet_controller.config import OperatorIdentity
from hyperfleet_controller.errors import OwnershipError
from hyperfleet_controller.providers.base import VMStatus


MANAGED_BY_TAG = "managed-by"
CLUSTER_TAG = "hyperfleet.io/cluster"
NAMESPACE_TAG = "hyperfleet.io/namespace"
CLAIM_TAG = "hyperfleet.io/claim"
CLAIM_UID_TAG = "hyperfleet.io/claim-uid"
POOL_TAG = "hyperfleet.io/pool"
CREATED_AT_TAG = "hyperfleet.io/created-at"
OPERATOR_INSTANCE_TAG = "hyperfleet.io/operator-instance"


def build_ownership_tags(
    identity: OperatorIdentity,
    *,
    cluster_name: str,
    namespace: str,
    claim_name: str,
    claim_uid: str,
    pool_name: str | None,
    created_at: datetime,
) -> dict[str, str]:
    return {
        MANAGED_BY_TAG: identity.managed_by,
        CLUSTER_TAG: cluster_name,
        NAMESPACE_TAG: namespace,
        CLAIM_TAG: claim_name,
        CLAIM_UID_TAG: claim_uid,
        POOL_TAG: pool_name or "",
        CREATED_AT_TAG: created_at.replace(microsecond=0).isoformat() + "Z",
        OPERATOR_INSTANCE_TAG: identity.instance_id,
    }


def validate_vm_ownership(identity: OperatorIdentity, status: VMStatus) -> None:
    """Raise OwnershipError unless the VM was created by this operator instance.

    Absent tags count as a mismatch.
    """
    tags = status.tags or {}
    managed_by = tags.get(MANAGED_BY_TAG)
    if managed_by != identity.managed_by:
        raise OwnershipError(
            f"vm {status.vm_id} is not managed by {identity.managed_by} "
            f"(managed-by={managed_by or '<missing>'})"
        )
    instance = tags.get(OPERATOR_INSTANCE_TAG)
    if instance != identity.instance_id:
        raise OwnershipError(
            f"vm {status.vm_id} belongs to operator instance "
            f"{instance or '<missing>'}, "
            f"not {identity.instance_id}"
        )
