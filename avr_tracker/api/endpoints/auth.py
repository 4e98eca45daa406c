from datetime import timedelta
from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import OAuth2PasswordRequestForm
from avr_tracker.core.security import create_access_token
from avr_tracker.core.config import get_settings
from avr_tracker.schemas.user import AuthenticatedIdentity, Me, OtpRequest, OtpSent, OtpVerify, Token
from avr_tracker.services.identity import EmailCredential, IdentityResolver, PhoneCredential
from avr_tracker.api.deps import get_current_identity, get_resolver

router = APIRouter()

# Get app settings (SECRET_KEY, token lifetime, etc.)
settings = get_settings()


def _issue_token(identity: AuthenticatedIdentity) -> dict:
    if not identity.is_recognized:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Your account has no usable role. Please contact admin."
        )

    access_token = create_access_token(
        data={"sub": identity.identifier, "role": identity.role.value},
        expires_delta=timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    return {
        "access_token": access_token,
        "token_type": "bearer",
        "role": identity.role,
        "identifier": identity.identifier,
    }


@router.post("/login", response_model=Token)
def login(
    form_data: OAuth2PasswordRequestForm = Depends(),
    resolver: IdentityResolver = Depends(get_resolver)
):
    """
    ENDPOINT 1: ADMIN LOGIN

    WHO CAN USE: the admin (email + password)
    """
    # Wrong email or password comes back as 401 via the error handler
    identity = resolver.authenticate(EmailCredential(form_data.username, form_data.password))
    return _issue_token(identity)


@router.post("/otp/send", response_model=OtpSent)
def send_otp(body: OtpRequest, resolver: IdentityResolver = Depends(get_resolver)):
    """
    ENDPOINT 2: SEND OTP

    WHO CAN USE: anyone with a registered phone number
    """
    # STEP 1: Number must be 10 digits and have a users/ document
    # STEP 2: Provider sends the code
    handle = resolver.request_otp(body.phone_number)
    return {"verification_id": handle.verification_id}


@router.post("/otp/verify", response_model=Token)
def verify_otp(body: OtpVerify, resolver: IdentityResolver = Depends(get_resolver)):
    """
    ENDPOINT 3: VERIFY OTP AND LOG IN
    """
    identity = resolver.authenticate(PhoneCredential(body.verification_id, body.code))
    return _issue_token(identity)


@router.get("/me", response_model=Me)
def read_me(identity: AuthenticatedIdentity = Depends(get_current_identity)):
    """
    ENDPOINT 4: GET CURRENT USER INFO
    """
    return {
        "identifier": identity.identifier,
        "display_name": identity.display_name,
        "role": identity.role,
        "is_admin": identity.is_admin,
        "is_approver": identity.is_approver,
        "is_user": identity.is_user,
    }
