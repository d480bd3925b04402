"""User-facing messages shared by the service layer and the API."""

UNAUTHORIZED = "Not authorized to access this route"
TOKEN_EXPIRED = "Token has expired"
TOKEN_REVOKED = "Token has been revoked or is invalid"
TOKEN_NOT_FOUND = "Invalid or expired refresh token"
REFRESH_TOKEN_REQUIRED = "Refresh token is required"
USER_NOT_FOUND = "User not found"
USER_MISSING = "User no longer exists"
USER_DEACTIVATED = "Your account has been deactivated"
INVALID_CREDENTIALS = "Invalid email or password"
EMAIL_EXISTS = "Email already registered"
PASSWORDS_NOT_MATCH = "Passwords do not match"
INVALID_OTP = "Invalid OTP"
OTP_EXPIRED = "OTP expired"
OTP_USED = "OTP already used"
MAX_ATTEMPTS_EXCEEDED = "Maximum attempts exceeded"
INVALID_PASSWORD = "Current password is incorrect"
SAME_PASSWORD = "New password must be different from current password"
ADMIN_REQUIRED = "Admin access required"
INSTRUCTOR_REQUIRED = "Instructor access required"
CANNOT_DELETE_ADMIN = "Cannot delete admin account"
CANNOT_DEACTIVATE_ADMIN = "Cannot deactivate admin account"
INVALID_STATUS = "Invalid status"
INVALID_ID = "Invalid ID format"
INTERNAL_ERROR = "Internal server error"
TOO_MANY_REQUESTS = "Too many requests, please try again later"

SIGNUP_SUCCESS = "Registration successful"
LOGIN_SUCCESS = "Login successful"
LOGOUT_SUCCESS = "Logged out successfully"
OTP_SENT = "If your email is registered with us, you will receive an OTP shortly"
OTP_LOGIN_SUCCESS = "OTP verified successfully. Please reset your password"
PASSWORD_RESET = "Password reset successfully"
PASSWORD_SET = "Password set successfully"
INSTRUCTOR_CREATED = "Instructor created successfully. Login credentials sent to email"


def instructor_not_approved(status: str) -> str:
    return f"Your account is {status}. Please wait for admin approval."
