"""Domain-specific exceptions"""


class DomainException(Exception):
    """Base exception for domain layer"""

    pass


class InvalidApplicationError(DomainException):
    """Application input is missing or out of range"""

    def __init__(self, field: str, reason: str):
        super().__init__(f"{field}: {reason}")
        self.field = field
        self.reason = reason


class NotFoundError(DomainException):
    """Referenced entity does not exist"""

    entity = "Entity"

    def __init__(self, entity_id: object = None):
        super().__init__(f"{self.entity} not found" if entity_id is None else f"{self.entity} not found: {entity_id}")
        self.entity_id = entity_id


class ApplicationNotFoundError(NotFoundError):
    entity = "Application"


class OfferNotFoundError(NotFoundError):
    entity = "Offer"


class LenderNotFoundError(NotFoundError):
    entity = "Lender"


class LoanNotFoundError(NotFoundError):
    entity = "Loan"


class AssessmentNotFoundError(NotFoundError):
    entity = "Risk assessment"


class ConflictError(DomainException):
    """Operation conflicts with the current state; nothing was written"""

    pass


class OfferUnavailableError(ConflictError):
    """Offer is no longer PENDING or its application already selected an offer"""

    def __init__(self, message: str = "Offer not found or no longer available"):
        super().__init__(message)


class ApplicationClosedError(ConflictError):
    """Application has already selected an offer"""

    pass


class DuplicateApplicationError(ConflictError):
    """An application with this id was already submitted"""

    def __init__(self, message: str = "Application already submitted"):
        super().__init__(message)


class UnauthorizedOfferError(ConflictError):
    """Accepting user does not own the application"""

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)


class DataSourceUnavailableError(DomainException):
    """A scoring data source could not be reached or returned bad data"""

    pass


class LenderNotificationError(DomainException):
    """Lender webhook endpoint is unreachable or rejected the notification"""

    pass
