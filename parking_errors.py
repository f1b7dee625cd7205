class ParkingServiceError(Exception):
    """Base exception for booking service errors"""
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidArgumentError(ParkingServiceError):
    """Malformed status value, pricing mode, timestamp or space id"""
    status_code = 400


class ForbiddenError(ParkingServiceError):
    """Actor is not allowed to perform the operation"""
    status_code = 403


class NotFoundError(ParkingServiceError):
    """Referenced lot, slot, booking or user does not exist"""
    status_code = 404


class ConflictError(ParkingServiceError):
    """Spot not bookable, illegal status transition or duplicate record"""
    status_code = 409
