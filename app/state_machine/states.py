"""
Flow, step and keyword definitions for the conversation state machine
"""
from enum import Enum

from app.core.config import settings


class FlowType(str, Enum):
    """Conversation flows. The value is stored in conversation_sessions.current_flow."""

    MAIN_MENU = "main_menu"
    REGISTRATION = "registration"

    # Shops
    PRODUCT_SEARCH = "product_search"
    PRODUCT_RESPOND = "product_respond"
    OFFERS_UPLOAD = "offers_upload"

    # Agreements
    AGREEMENT_CREATE = "agreement_create"
    AGREEMENT_CONFIRM = "agreement_confirm"

    SETTINGS = "settings"

    # Fish market
    FISH_SELLER_REGISTER = "fish_seller_register"
    FISH_POST_CATCH = "fish_post_catch"
    FISH_STOCK_UPDATE = "fish_stock_update"
    FISH_SUBSCRIBE = "fish_subscribe"
    FISH_MANAGE_SUBSCRIPTION = "fish_manage_subscription"
    FISH_BROWSE = "fish_browse"
    FISH_SELLER_MENU = "fish_seller_menu"

    # Jobs
    JOB_WORKER_REGISTER = "job_worker_register"
    JOB_POST = "job_post"
    JOB_BROWSE = "job_browse"
    JOB_WORKER_MENU = "job_worker_menu"
    JOB_POSTER_MENU = "job_poster_menu"
    JOB_APPLICATION = "job_application"
    JOB_SELECTION = "job_selection"
    JOB_APPLICATIONS = "job_applications"
    JOB_EXECUTION = "job_execution"

    # Flash deals
    FLASH_DEAL_CREATE = "flash_deal_create"
    FLASH_DEAL_CLAIM = "flash_deal_claim"
    FLASH_DEAL_MANAGE = "flash_deal_manage"

    @property
    def timeout_minutes(self) -> int:
        return _FLOW_TIMEOUTS.get(self, settings.SESSION_TIMEOUT_MINUTES)

    @classmethod
    def timeout_for(cls, flow: str | None) -> int:
        """Timeout for a stored flow value; unknown flows use the default."""
        try:
            return cls(flow).timeout_minutes
        except ValueError:
            return settings.SESSION_TIMEOUT_MINUTES


# Minutes of inactivity before a flow expires. MAIN_MENU uses the default.
_FLOW_TIMEOUTS: dict[FlowType, int] = {
    FlowType.REGISTRATION: 60,
    FlowType.PRODUCT_SEARCH: 120,
    FlowType.PRODUCT_RESPOND: 120,
    FlowType.OFFERS_UPLOAD: 30,
    FlowType.AGREEMENT_CREATE: 30,
    FlowType.AGREEMENT_CONFIRM: 30,
    FlowType.SETTINGS: 15,
    FlowType.FISH_SELLER_REGISTER: 30,
    FlowType.FISH_POST_CATCH: 15,
    FlowType.FISH_STOCK_UPDATE: 10,
    FlowType.FISH_SUBSCRIBE: 15,
    FlowType.FISH_MANAGE_SUBSCRIPTION: 15,
    FlowType.FISH_BROWSE: 30,
    FlowType.FISH_SELLER_MENU: 30,
    FlowType.JOB_WORKER_REGISTER: 30,
    FlowType.JOB_POST: 30,
    FlowType.JOB_BROWSE: 30,
    FlowType.JOB_WORKER_MENU: 30,
    FlowType.JOB_POSTER_MENU: 30,
    FlowType.JOB_APPLICATION: 30,
    FlowType.JOB_SELECTION: 30,
    FlowType.JOB_APPLICATIONS: 30,
    FlowType.JOB_EXECUTION: 60,
    FlowType.FLASH_DEAL_CREATE: 30,
    FlowType.FLASH_DEAL_CLAIM: 15,
    FlowType.FLASH_DEAL_MANAGE: 30,
}


class MenuStep(str, Enum):
    IDLE = "idle"
    MAIN_MENU = "main_menu"
    SHOW_MENU = "show_menu"


# Any of these means "not in the middle of anything", whatever current_flow says
IDLE_STEPS = frozenset(step.value for step in MenuStep)


class SubscribeStep(str, Enum):
    ASK_LOCATION = "ask_location"
    ASK_RADIUS = "ask_radius"
    ASK_TYPES = "ask_types"
    ASK_FREQUENCY = "ask_frequency"
    CONFIRM = "confirm"


class ManageSubscriptionStep(str, Enum):
    SHOW_STATUS = "show_status"
    ASK_PAUSE_DAYS = "ask_pause_days"
    ASK_FREQUENCY = "ask_frequency"
    CONFIRM_DELETE = "confirm_delete"


class PostCatchStep(str, Enum):
    AWAITING_FISH_TYPE = "awaiting_fish_type"
    AWAITING_PHOTO = "awaiting_photo"
    AWAITING_LOCATION = "awaiting_location"
    CONFIRM = "confirm"


# Where RESTART puts a user back for each implemented flow
FIRST_STEPS: dict[FlowType, str] = {
    FlowType.FISH_SUBSCRIBE: SubscribeStep.ASK_LOCATION.value,
    FlowType.FISH_MANAGE_SUBSCRIPTION: ManageSubscriptionStep.SHOW_STATUS.value,
    FlowType.FISH_POST_CATCH: PostCatchStep.AWAITING_FISH_TYPE.value,
}


# Allowed step transitions inside a flow (a step may always repeat itself)
SUBSCRIBE_TRANSITIONS = {
    SubscribeStep.ASK_LOCATION: [SubscribeStep.ASK_RADIUS],
    SubscribeStep.ASK_RADIUS: [SubscribeStep.ASK_TYPES],
    SubscribeStep.ASK_TYPES: [SubscribeStep.ASK_FREQUENCY],
    SubscribeStep.ASK_FREQUENCY: [SubscribeStep.CONFIRM],
    SubscribeStep.CONFIRM: [SubscribeStep.ASK_LOCATION],
}

MANAGE_SUBSCRIPTION_TRANSITIONS = {
    ManageSubscriptionStep.SHOW_STATUS: [
        ManageSubscriptionStep.ASK_PAUSE_DAYS,
        ManageSubscriptionStep.ASK_FREQUENCY,
        ManageSubscriptionStep.CONFIRM_DELETE,
    ],
    ManageSubscriptionStep.ASK_PAUSE_DAYS: [ManageSubscriptionStep.SHOW_STATUS],
    ManageSubscriptionStep.ASK_FREQUENCY: [ManageSubscriptionStep.SHOW_STATUS],
    ManageSubscriptionStep.CONFIRM_DELETE: [ManageSubscriptionStep.SHOW_STATUS],
}

POST_CATCH_TRANSITIONS = {
    PostCatchStep.AWAITING_FISH_TYPE: [PostCatchStep.AWAITING_PHOTO],
    PostCatchStep.AWAITING_PHOTO: [PostCatchStep.AWAITING_LOCATION],
    PostCatchStep.AWAITING_LOCATION: [PostCatchStep.CONFIRM],
    PostCatchStep.CONFIRM: [PostCatchStep.AWAITING_FISH_TYPE],
}

FLOW_TRANSITIONS: dict[FlowType, tuple[type[Enum], dict]] = {
    FlowType.FISH_SUBSCRIBE: (SubscribeStep, SUBSCRIBE_TRANSITIONS),
    FlowType.FISH_MANAGE_SUBSCRIPTION: (ManageSubscriptionStep, MANAGE_SUBSCRIPTION_TRANSITIONS),
    FlowType.FISH_POST_CATCH: (PostCatchStep, POST_CATCH_TRANSITIONS),
}


def is_valid_step_transition(flow: str, current: str, target: str) -> bool:
    """Check a step change inside one flow. Flows without a table accept anything."""
    try:
        flow_type = FlowType(flow)
    except ValueError:
        return True
    if flow_type not in FLOW_TRANSITIONS:
        return True
    if current == target or current in IDLE_STEPS:
        return True

    step_enum, transitions = FLOW_TRANSITIONS[flow_type]
    try:
        current_step = step_enum(current)
        target_step = step_enum(target)
    except ValueError:
        return False
    return target_step in transitions.get(current_step, [])


class Intent(str, Enum):
    MENU = "menu"
    CANCEL = "cancel"
    HELP = "help"
    RESTART = "restart"
    NONE = "none"


MENU_KEYWORDS = frozenset({"menu", "home", "start", "0", "hi", "hello", "main"})
CANCEL_KEYWORDS = frozenset({"cancel", "exit", "quit", "stop", "end"})
HELP_KEYWORDS = frozenset({"help", "?", "support", "how"})
RESTART_KEYWORDS = frozenset({"restart", "reset", "start over"})


def detect_intent(text: str | None) -> Intent:
    """Whole-message keyword match, case-insensitive and trimmed."""
    if not text:
        return Intent.NONE
    normalized = " ".join(text.strip().lower().split())
    if normalized in RESTART_KEYWORDS:
        return Intent.RESTART
    if normalized in MENU_KEYWORDS:
        return Intent.MENU
    if normalized in CANCEL_KEYWORDS:
        return Intent.CANCEL
    if normalized in HELP_KEYWORDS:
        return Intent.HELP
    return Intent.NONE
