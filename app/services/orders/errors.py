class OrderError(Exception):
    """Order operation rejected. status_code is the HTTP equivalent."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def as_detail(self) -> dict:
        return {"error": self.message}


class OrderNotFound(OrderError):
    status_code = 404

    def __init__(self, order_id: str):
        super().__init__(f"Order not found: {order_id}")
        self.order_id = order_id


class AlreadyCancelled(OrderError):
    status_code = 409

    def __init__(self, order_id: str):
        super().__init__("Order is already cancelled")
        self.order_id = order_id


class InvalidTransition(OrderError):
    def __init__(self, current_status: str, requested_status: str, allowed: list[str]):
        super().__init__(f"Invalid status transition from {current_status} to {requested_status}")
        self.current_status = current_status
        self.requested_status = requested_status
        self.allowed = allowed

    def as_detail(self) -> dict:
        return {
            "error": self.message,
            "current_status": self.current_status,
            "requested_status": self.requested_status,
            "allowed": self.allowed,
        }
