from fastapi import Depends
from sqlalchemy.ext.asyncio import async_sessionmaker

from payfirst.database import get_session_factory
from payfirst.settings import Settings, get_settings
from payfirst.services.callbacks import CallbackReceiver
from payfirst.services.checkout import CheckoutManager
from payfirst.services.duitku_gateway import DuitkuGateway
from payfirst.services.identity import IdentityProvider, build_identity_provider
from payfirst.services.registration import RegistrationReconciler
from payfirst.services.verification import PaymentVerifier


def get_gateway(settings: Settings = Depends(get_settings)) -> DuitkuGateway:
    return DuitkuGateway(settings)


def get_identity_provider(
    settings: Settings = Depends(get_settings),
    session_factory: async_sessionmaker = Depends(get_session_factory),
) -> IdentityProvider:
    return build_identity_provider(settings, session_factory)


def get_checkout_manager(
    settings: Settings = Depends(get_settings),
    session_factory: async_sessionmaker = Depends(get_session_factory),
    gateway: DuitkuGateway = Depends(get_gateway),
) -> CheckoutManager:
    return CheckoutManager(settings, session_factory, gateway)


def get_callback_receiver(
    settings: Settings = Depends(get_settings),
    session_factory: async_sessionmaker = Depends(get_session_factory),
) -> CallbackReceiver:
    return CallbackReceiver(settings, session_factory)


def get_verifier(
    session_factory: async_sessionmaker = Depends(get_session_factory),
    gateway: DuitkuGateway = Depends(get_gateway),
) -> PaymentVerifier:
    return PaymentVerifier(session_factory, gateway)


def get_reconciler(
    session_factory: async_sessionmaker = Depends(get_session_factory),
    verifier: PaymentVerifier = Depends(get_verifier),
    identity: IdentityProvider = Depends(get_identity_provider),
) -> RegistrationReconciler:
    return RegistrationReconciler(session_factory, verifier, identity)
