from .base import *

DEBUG = False

SECRET_KEY = 'test-secret-key'

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': ':memory:',
    }
}

ALLOWED_HOSTS = ['testserver']

EMAIL_BACKEND = 'django.core.mail.backends.locmem.EmailBackend'
PAYMENTS_ADMIN_EMAILS = 'ops@example.com'
DEFAULT_FROM_EMAIL = 'shop@example.com'

FRONTEND_URL = 'https://shop.example.com'
PHONEPE_MERCHANT_ID = 'PGTESTPAYUAT'
PHONEPE_SALT_KEY = 'test-salt-key'
PHONEPE_SALT_INDEX = '1'
PHONEPE_BASE_URL = 'https://gateway.example.com'
PHONEPE_REDIRECT_URL = 'https://api.example.com/redirect'
PHONEPE_CALLBACK_URL = 'https://api.example.com/callback'
PHONEPE_REQUIRE_SIGNED_CALLBACKS = False
