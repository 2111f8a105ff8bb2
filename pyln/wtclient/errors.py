# Error codes returned by towers in the `error_code` field of an error
# response.

# Appointment errors [-1, -64]
APPOINTMENT_EMPTY_FIELD = -1
APPOINTMENT_WRONG_FIELD_TYPE = -2
APPOINTMENT_WRONG_FIELD_SIZE = -3
APPOINTMENT_WRONG_FIELD_FORMAT = -4
APPOINTMENT_FIELD_TOO_SMALL = -5
APPOINTMENT_FIELD_TOO_BIG = -6
APPOINTMENT_WRONG_FIELD = -7
APPOINTMENT_INVALID_SIGNATURE_OR_SUBSCRIPTION_ERROR = -8
APPOINTMENT_ALREADY_TRIGGERED = -9
APPOINTMENT_NOT_FOUND = -10

# Registration errors [-65, -96]
REGISTRATION_MISSING_FIELD = -65
REGISTRATION_WRONG_FIELD_FORMAT = -66

# General errors [-97, -127]
INVALID_REQUEST_FORMAT = -97
UNEXPECTED_ERROR = -98
SERVICE_UNAVAILABLE = -99
