class AppointmentError(Exception):
    status_code = 400
    default_message = "Appointment request failed."

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        self.code = self.__class__.__name__
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"detail": self.message, "code": self.code}


class AppointmentNotFound(AppointmentError):
    status_code = 404
    default_message = "Appointment not found."


class DoctorNotFound(AppointmentError):
    status_code = 404
    default_message = "Doctor not found or profile incomplete."


class InvalidTransition(AppointmentError):
    status_code = 409
    default_message = "This appointment can no longer be changed."


class SlotUnavailable(AppointmentError):
    status_code = 409
    default_message = "This time slot is no longer available."


class LeadTimeViolation(AppointmentError):
    status_code = 400
    default_message = "Appointments must be booked at least 24 hours in advance."


class NotApprovable(AppointmentError):
    status_code = 400
    default_message = "Only approved appointments can be paid for."


class WindowExpired(AppointmentError):
    status_code = 410
    default_message = "The payment window has expired. This appointment is no longer payable."


class AlreadyPaid(AppointmentError):
    status_code = 409
    default_message = "Appointment is already paid."


class ProviderSignatureInvalid(AppointmentError):
    status_code = 400
    default_message = "Invalid webhook signature."


class DependencyUnavailable(AppointmentError):
    status_code = 503
    default_message = "A required service is unavailable. Try again later."
