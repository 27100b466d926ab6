class FlowException(Exception):
    """
    This is the base exception for all flow exceptions
    """
    def __init__(self, message: str, status_code: int):
        self.message = message
        self.status_code = status_code
        super().__init__(self.message, self.status_code)

    def __str__(self) -> str:
        return self.message

class FlowDBException(FlowException):
    """
    This is the exception for all flow database exceptions
    """
    def __init__(self, message: str, status_code: int = 500):
        self.message = message
        self.status_code = status_code
        super().__init__(message=self.message, status_code=self.status_code)

class FlowServiceException(FlowException):
    """
    This is the exception for all flow service exceptions
    """
    def __init__(self, message: str):
        self.message = message
        self.status_code = 500
        super().__init__(message=self.message, status_code=self.status_code)

class FlowNotFoundException(FlowException):
    """
    This is the exception when a flow or session is missing, or belongs to another organization
    """
    def __init__(self, message: str):
        self.message = message
        self.status_code = 404
        super().__init__(message=self.message, status_code=self.status_code)

class FlowValidationException(FlowException):
    """
    This is the exception for flow validation errors (malformed graph, bad content)
    """
    def __init__(self, message: str):
        self.message = message
        self.status_code = 400
        super().__init__(message=self.message, status_code=self.status_code)

class FlowStepLoopException(FlowException):
    """
    Raised when a session exceeds the synchronous step bound for one event
    """
    def __init__(self, message: str, steps: int = 0):
        self.message = message
        self.steps = steps
        self.status_code = 500
        super().__init__(message=self.message, status_code=self.status_code)

class ExternalCallException(FlowException):
    """
    AI provider, webhook, email or channel call failed or timed out
    """
    def __init__(self, message: str, is_timeout: bool = False, status_code: int = 502):
        self.message = message
        self.is_timeout = is_timeout
        self.status_code = status_code
        super().__init__(message=self.message, status_code=self.status_code)

class ConcurrencyConflictException(FlowException):
    """
    Two writers raced on the same flow or session row
    """
    def __init__(self, message: str):
        self.message = message
        self.status_code = 409
        super().__init__(message=self.message, status_code=self.status_code)
