"""Floating IP controller exceptions."""


class FipControllerException(Exception):
    """Base exception for controller errors.

    ``retryable`` tells the dispatch layer whether a failed work item should
    be re-queued with backoff or dropped.
    """

    message = "An unknown exception occurred."
    retryable = True

    def __init__(self, message=None, **kwargs):
        """Initialize exception with optional custom message."""
        self.kwargs = kwargs
        if message:
            self.message = message
        super(FipControllerException, self).__init__(self.message % kwargs)


# Validation errors. These never succeed on retry.


class FipValidationError(FipControllerException):
    """Request is invalid and will not be retried."""

    message = "Validation error: %(details)s"
    retryable = False


class FipAnnotationConflict(FipValidationError):
    """eip and snat annotations resolve to the same address."""

    message = "eip and snat must not be the same address: %(ip)s"


class LogicalRouterAnnotationMissing(FipValidationError):
    """Pod requests a floating IP without naming its logical router."""

    message = "Pod %(pod)s has no logical router annotation"


class EipAlreadyAllocated(FipValidationError):
    """eip is bound to another resource."""

    message = "eip %(ip)s has been allocated to another resource"


class InvalidFipPatch(FipValidationError):
    """Patch names an unknown operation or field path."""

    message = "Invalid fip patch: op=%(op)s path=%(path)s"


class PortUpdateNotSupported(FipValidationError):
    """Port spec updates are not reconciled against the provider."""

    message = "Updating port %(key)s is not implemented"


# Lookup errors.


class ResourceNotFound(FipControllerException):
    """Generic resource not found error."""

    message = "Resource %(resource_id)s not found"


class FipNotFound(ResourceNotFound):
    """Fip record not found."""

    message = "Fip %(name)s not found"


class VpcNotFound(ResourceNotFound):
    """Vpc (logical router) not found."""

    message = "Vpc %(name)s not found"


class PortNotFound(ResourceNotFound):
    """Port record not found."""

    message = "Port %(key)s not found"


# Resource store errors.


class ResourceStoreError(FipControllerException):
    """Kubernetes API communication error."""

    message = "Resource store error: %(details)s"


class StatusSerializationError(FipControllerException):
    """Status could not be serialized for patching."""

    message = "Failed to serialize status of %(name)s: %(details)s"


# Provider errors.


class NeutronError(FipControllerException):
    """Neutron API error.

    Base exception for provider-side failures. Retryable unless a subclass
    says otherwise.
    """

    message = "Neutron error: %(details)s"


class NeutronAuthenticationError(NeutronError):
    """Neutron authentication error.

    Raised when the [neutron] section is not configured or authentication
    fails. Retrying will not help until the operator fixes the credentials.
    """

    message = "Neutron authentication error: %(details)s"
    retryable = False


class NeutronPortCreationFailed(NeutronError):
    """Failed to create Neutron port."""

    message = "Failed to create Neutron port: %(details)s"


class NeutronNetworkNotFound(NeutronError):
    """Neutron network not found."""

    message = "Neutron network %(network_id)s not found"


class NeutronFloatingIPError(NeutronError):
    """Floating IP create/delete failed."""

    message = "Floating IP %(ip)s error: %(details)s"
