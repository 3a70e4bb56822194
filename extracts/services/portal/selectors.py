"""CSS selectors, marker texts and URLs of the login and cabinet pages."""

# Gosuslugi (ESIA) login pages
GU_SIGN_IN_BUTTON = (
    "body > esia-root > div > esia-login > div > "
    "div.form-container.esia-form-container.disable-outline > form > div.mt-40 > button"
)
GU_SIGN_IN_BUTTON_ALT = (
    "body > esia-root > div > esia-login > div > div.form-container.outline-none > "
    "form > div:nth-child(5) > button"
)
GU_LOGIN_INPUT = "#login"
GU_PASSWORD_INPUT = "#password"

_REACTION = "body > esia-root > esia-reaction > div > div > div > div"

CAPTCHA_IMAGE_LABEL = f"{_REACTION} > div > h3"
CAPTCHA_IMAGE = f"{_REACTION} > div > img"
CAPTCHA_INPUT = f"{_REACTION} > div > div.esia-captcha__code-entry > label > input"
CAPTCHA_CONTINUE_BUTTON = f"{_REACTION} > div > div.esia-captcha__code-entry > button"

ANOMALY_QUESTION = f"{_REACTION} > p"
ANOMALY_INPUT = (
    f"{_REACTION} > div.abstract-request-information__input > "
    "div:nth-child(1) > label > input"
)
ANOMALY_NEXT_BUTTON = (
    f"{_REACTION} > div.abstract-request-information__input > div:nth-child(2) > button"
)

_LOGIN_FORM = (
    "body > esia-root > div > esia-login > div > "
    "div.form-container.esia-form-container.disable-outline"
)

MESSENGER_OPT_OUT_TEXT = f"{_LOGIN_FORM} > esia-max-quiz > div > h1"
MESSENGER_OPT_OUT_SKIP_BUTTON = f"{_LOGIN_FORM} > esia-max-quiz > div > div.mt-40 > div > button"

SMS_CODE_TEXT = (
    "body > esia-root > div > esia-login > div > div > esia-enter-mfa > esia-otp > "
    "div > form > div > esia-code-input > div > div"
)
SMS_CODE_INPUT = (
    f"{_LOGIN_FORM} > esia-enter-mfa > esia-otp > div:nth-child(1) > form > div > "
    "esia-code-input > div > div > code-input > span:nth-child(1) > input[type=tel]"
)

# Registry personal cabinet
LK_SIGN_IN = "#headerTopInfo > div > div.top-info__user-wrap > div"
PROPERTY_SEARCH_PATH = "/request-access-egrn/property-search"

# Marker texts, compared case-insensitively
CAPTCHA_MARKER = "Введите код с картинки"
ANOMALY_MARKER = "Подтвердите, что это вы"
MESSENGER_OPT_OUT_MARKER = "Подтверждайте вход через мессенджер MAX"
RESTORE_BUTTON_TEXT = "Восстановить"

# Redirect target after a successful login
REDIRECT_DOMAIN = "rosreestr.ru"

# Cookie carrying the ESIA user id of the logged-in operator
AUTHORIZED_USER_COOKIE = "PC_USER_WAS_AUTHORIZED"
