# /clinicbot/config/strings.py

# This file contains all user-facing strings, keyed by language, so the
# dialogue logic never hard-codes text. Russian is the reference language and
# the fallback for any key a translation is missing.

FALLBACK_LANGUAGE = "ru"

STRINGS = {
    "ru": {
        # Greeting and standalone handlers
        "GREETING": (
            "{salutation} Добро пожаловать в клинику \"{clinic_name}\"! 🦷\n\n"
            "Я ваш помощник и могу помочь:\n"
            "• Записаться на прием к врачу\n"
            "• Отменить существующую запись\n"
            "• Рассказать о наших услугах и ценах\n"
            "• Предоставить контакты и режим работы\n\n"
            "Просто напишите, что вас интересует! 😊"
        ),
        "SALUTATION_NAMED": "Здравствуйте, {name}!",
        "SALUTATION": "Здравствуйте!",
        "INFO_GENERAL": (
            "🏥 Клиника \"{clinic_name}\"\n\n"
            "Мы - современная стоматологическая клиника с опытными врачами.\n\n"
            "📍 Адрес: {address}\n"
            "📞 Телефон: {phone}\n\n"
            "Спросите меня об услугах, ценах или запишитесь на прием! 🦷"
        ),
        "INFO_SERVICES": (
            "🦷 Наши услуги:\n\n"
            "{service_lines}\n\n"
            "Хотите записаться? Просто напишите \"записаться\"!"
        ),
        "INFO_CONTACTS": (
            "📞 Контакты:\n\n"
            "Телефон: {phone}\n"
            "📍 Адрес: {address}\n\n"
            "🕐 Режим работы:\n{hours}"
        ),
        "HELP": (
            "Я могу помочь вам:\n"
            "• \"записаться\" - запись на прием\n"
            "• \"отменить\" - отмена записи\n"
            "• \"услуги\" - наши услуги и цены\n"
            "• \"контакты\" - адрес и режим работы\n"
            "• \"язык\" - сменить язык"
        ),
        "SMALL_TALK_THANKS": "Пожалуйста! Всегда рады помочь 😊",
        "SMALL_TALK_BYE": "До свидания! Будем рады видеть вас в нашей клинике 😊",
        "SMALL_TALK_DEFAULT": "Я здесь, чтобы помочь! Напишите \"помощь\", чтобы узнать, что я умею.",
        "FALLBACK": (
            "🤔 Извините, я не совсем понял ваш запрос.\n\n"
            "Я могу записать вас на прием, отменить запись или рассказать о клинике. "
            "Просто напишите, что вас интересует! 😊"
        ),
        "FALLBACK_ESCALATE": (
            "😔 Извините, мне сложно понять ваш запрос. Вы можете позвонить администратору: {phone}\n\n"
            "Или попробуйте написать:\n"
            "• \"записаться\"\n• \"отменить\"\n• \"услуги\"\n• \"контакты\""
        ),
        "LANGUAGE_PROMPT": "Выберите язык общения:",
        "LANGUAGE_CHANGED": "Готово! Теперь я буду общаться на русском языке.",
        "APPOINTMENT_CONFIRMED": "✅ Ваша запись подтверждена! Ждем вас в назначенное время.",
        "APPOINTMENT_NOT_FOUND": "Не удалось найти запись для подтверждения.",
        "APPOINTMENT_ALREADY_BOOKED": "Ваша запись №{appointment_id} уже создана. Мы пришлем напоминание накануне приема.",

        # Booking flow prompts
        "PROMPT_COLLECT_NAME": "Как вас зовут?",
        "PROMPT_COLLECT_PHONE": "Укажите ваш номер телефона",
        "PROMPT_SELECT_SERVICE": "Какая услуга вас интересует?",
        "PROMPT_SELECT_DOCTOR": "Выберите врача",
        "PROMPT_SELECT_DATE": "Выберите удобную дату",
        "PROMPT_SELECT_TIME": "Выберите время",
        "PROMPT_CONFIRMATION": (
            "📋 Подтвердите запись:\n\n"
            "👤 Пациент: {patient_name}\n"
            "🏥 Клиника: {clinic_name}\n"
            "🦷 Услуга: {service_name}\n"
            "👨‍⚕️ Врач: {doctor_name}\n"
            "📅 Дата: {date}\n"
            "⏰ Время: {time}\n\n"
            "Все верно?"
        ),
        "CONFIRMATION_HINT": "Пожалуйста, ответьте \"да\" или \"нет\".",
        "OPTION_CONFIRM": "✅ Подтвердить",
        "OPTION_CANCEL": "❌ Отменить",
        "BOOKING_CREATED": (
            "✅ Запись успешно создана!\n\n"
            "📋 Номер записи: {appointment_id}\n"
            "🦷 Услуга: {service_name}\n"
            "📅 Дата: {date} в {time}\n\n"
            "Мы отправим вам напоминание за день до приема."
        ),
        "BOOKING_INCOMPLETE": "❌ Не хватает данных для создания записи. Попробуйте начать заново.",

        # Cancellation flow prompts
        "PROMPT_SELECT_APPOINTMENT": "Какую запись вы хотите отменить?",
        "NO_APPOINTMENTS": "У вас нет предстоящих записей. Чтобы записаться, напишите \"записаться\".",
        "PROMPT_CONFIRM_CANCELLATION": "Подтвердите отмену записи {appointment_label}: да / нет",
        "OPTION_CONFIRM_CANCELLATION": "✅ Да, отменить запись",
        "OPTION_KEEP_APPOINTMENT": "↩️ Нет, оставить",
        "APPOINTMENT_CANCELLED": "✅ Запись отменена. Будем рады видеть вас в другой раз!",

        # Validation messages
        "VALIDATION_NAME_REQUIRED": "Пожалуйста, укажите ваше имя",
        "VALIDATION_PHONE_REQUIRED": "Номер телефона обязателен",
        "VALIDATION_PHONE_FORMAT": "Неверный формат номера телефона",
        "VALIDATION_OPTION": "Пожалуйста, выберите один из предложенных вариантов.",
        "VALIDATION_INPUT": "Неверный ввод. Попробуйте снова.",

        # Flow control and errors
        "FLOW_CANCELLED": "❌ Действие отменено. Если захотите начать снова, напишите \"привет\".",
        "FLOW_RESET": "Произошла ошибка в диалоге. Начните, пожалуйста, сначала.",
        "RATE_LIMITED": "Вы отправляете сообщения слишком часто. Пожалуйста, подождите минуту.",
        "PERSISTENCE_ERROR": "❌ Не удалось сохранить данные. Пожалуйста, повторите ваш ответ.",
        "CONFLICT_ERROR": "Ваше предыдущее сообщение еще обрабатывается. Повторите, пожалуйста.",
        "GENERIC_ERROR": "❌ Произошла ошибка. Попробуйте снова.",
        "DATE_UNKNOWN": "Дата не указана",
        "NOT_SPECIFIED": "Не указано",

        # Quick-reply buttons
        "BUTTON_BOOK": "📅 Записаться",
        "BUTTON_SERVICES": "🦷 Услуги и цены",
        "BUTTON_CONTACTS": "📞 Контакты",
        "BUTTON_HELP": "❓ Помощь",
    },
    "en": {
        "GREETING": (
            "{salutation} Welcome to \"{clinic_name}\"! 🦷\n\n"
            "I can help you:\n"
            "• Book an appointment\n"
            "• Cancel an existing appointment\n"
            "• Learn about our services and prices\n"
            "• Get our contacts and opening hours\n\n"
            "Just tell me what you need! 😊"
        ),
        "SALUTATION_NAMED": "Hello, {name}!",
        "SALUTATION": "Hello!",
        "INFO_GENERAL": (
            "🏥 \"{clinic_name}\"\n\n"
            "📍 Address: {address}\n"
            "📞 Phone: {phone}\n\n"
            "Ask me about services and prices, or book an appointment! 🦷"
        ),
        "INFO_SERVICES": "🦷 Our services:\n\n{service_lines}\n\nWant to book? Just write \"book\"!",
        "INFO_CONTACTS": "📞 Contacts:\n\nPhone: {phone}\n📍 Address: {address}\n\n🕐 Opening hours:\n{hours}",
        "HELP": (
            "I can help you with:\n"
            "• \"book\" - book an appointment\n"
            "• \"cancel\" - cancel an appointment\n"
            "• \"services\" - services and prices\n"
            "• \"contacts\" - address and hours\n"
            "• \"language\" - change language"
        ),
        "SMALL_TALK_THANKS": "You're welcome! Always happy to help 😊",
        "SMALL_TALK_BYE": "Goodbye! We look forward to seeing you 😊",
        "SMALL_TALK_DEFAULT": "I'm here to help! Write \"help\" to see what I can do.",
        "FALLBACK": "🤔 Sorry, I didn't quite get that. I can book or cancel an appointment or tell you about the clinic.",
        "FALLBACK_ESCALATE": "😔 Sorry, I'm having trouble understanding. You can call our front desk: {phone}",
        "LANGUAGE_PROMPT": "Choose your language:",
        "LANGUAGE_CHANGED": "Done! I will now talk to you in English.",
        "APPOINTMENT_CONFIRMED": "✅ Your appointment is confirmed! See you soon.",
        "APPOINTMENT_NOT_FOUND": "We could not find an appointment to confirm.",
        "APPOINTMENT_ALREADY_BOOKED": "Your appointment #{appointment_id} is already booked. We will remind you the day before.",
        "PROMPT_COLLECT_NAME": "What is your name?",
        "PROMPT_COLLECT_PHONE": "Please share your phone number",
        "PROMPT_SELECT_SERVICE": "Which service are you interested in?",
        "PROMPT_SELECT_DOCTOR": "Choose a doctor",
        "PROMPT_SELECT_DATE": "Choose a date",
        "PROMPT_SELECT_TIME": "Choose a time",
        "PROMPT_CONFIRMATION": (
            "📋 Please confirm your appointment:\n\n"
            "👤 Patient: {patient_name}\n"
            "🏥 Clinic: {clinic_name}\n"
            "🦷 Service: {service_name}\n"
            "👨‍⚕️ Doctor: {doctor_name}\n"
            "📅 Date: {date}\n"
            "⏰ Time: {time}\n\n"
            "Is everything correct?"
        ),
        "CONFIRMATION_HINT": "Please answer \"yes\" or \"no\".",
        "OPTION_CONFIRM": "✅ Confirm",
        "OPTION_CANCEL": "❌ Cancel",
        "BOOKING_CREATED": (
            "✅ Your appointment is booked!\n\n"
            "📋 Booking number: {appointment_id}\n"
            "🦷 Service: {service_name}\n"
            "📅 Date: {date} at {time}\n\n"
            "We will remind you one day before the visit."
        ),
        "BOOKING_INCOMPLETE": "❌ Some booking details are missing. Please start again.",
        "PROMPT_SELECT_APPOINTMENT": "Which appointment would you like to cancel?",
        "NO_APPOINTMENTS": "You have no upcoming appointments. Write \"book\" to make one.",
        "PROMPT_CONFIRM_CANCELLATION": "Please confirm cancelling the appointment {appointment_label}: yes / no",
        "OPTION_CONFIRM_CANCELLATION": "✅ Yes",
        "OPTION_KEEP_APPOINTMENT": "↩️ No, keep it",
        "APPOINTMENT_CANCELLED": "✅ Your appointment has been cancelled.",
        "VALIDATION_NAME_REQUIRED": "Please tell me your name",
        "VALIDATION_PHONE_REQUIRED": "A phone number is required",
        "VALIDATION_PHONE_FORMAT": "That phone number doesn't look right",
        "VALIDATION_OPTION": "Please choose one of the options.",
        "VALIDATION_INPUT": "Invalid input. Please try again.",
        "FLOW_CANCELLED": "❌ Cancelled. Write \"hello\" whenever you want to start again.",
        "FLOW_RESET": "Something went wrong in our conversation. Please start again.",
        "RATE_LIMITED": "You are sending messages too quickly. Please wait a minute.",
        "PERSISTENCE_ERROR": "❌ We couldn't save that. Please send your answer again.",
        "CONFLICT_ERROR": "Your previous message is still being processed. Please repeat.",
        "GENERIC_ERROR": "❌ Something went wrong. Please try again.",
        "DATE_UNKNOWN": "No date",
        "NOT_SPECIFIED": "Not specified",

        "BUTTON_BOOK": "📅 Book",
        "BUTTON_SERVICES": "🦷 Services",
        "BUTTON_CONTACTS": "📞 Contacts",
        "BUTTON_HELP": "❓ Help",
    },
    "kk": {
        "SALUTATION_NAMED": "Сәлеметсіз бе, {name}!",
        "SALUTATION": "Сәлеметсіз бе!",
        "LANGUAGE_PROMPT": "Тілді таңдаңыз:",
        "LANGUAGE_CHANGED": "Дайын! Енді қазақ тілінде сөйлесемін.",
        "FLOW_CANCELLED": "❌ Тоқтатылды. Қайта бастау үшін \"сәлем\" деп жазыңыз.",
        "RATE_LIMITED": "Хабарламаларды тым жиі жіберіп жатырсыз. Бір минут күтіңіз.",
    },
}

LANGUAGE_LABELS = {
    "ru": "🇷🇺 Русский",
    "en": "🇬🇧 English",
    "kk": "🇰🇿 Қазақша",
}

SERVICE_CATALOG = [
    {"code": "consultation", "labels": {"ru": "Консультация", "en": "Consultation"}, "price": "от 5 000 тг"},
    {"code": "cleaning", "labels": {"ru": "Профессиональная чистка", "en": "Professional cleaning"}, "price": "15 000 тг"},
    {"code": "treatment", "labels": {"ru": "Лечение", "en": "Treatment"}, "price": "от 25 000 тг"},
    {"code": "prosthetics", "labels": {"ru": "Протезирование", "en": "Prosthetics"}, "price": "от 50 000 тг"},
]

WORKING_HOURS = {
    "ru": "Пн-Пт: 09:00 - 18:00\nСб: 10:00 - 16:00\nВс: выходной",
    "en": "Mon-Fri: 09:00 - 18:00\nSat: 10:00 - 16:00\nSun: closed",
}


def get_string(key: str, language: str = FALLBACK_LANGUAGE, **fmt) -> str:
    """Returns the localized string for `key`, formatted with `fmt`."""
    table = STRINGS.get(language) or {}
    template = table.get(key) or STRINGS[FALLBACK_LANGUAGE].get(key, key)
    if not fmt:
        return template
    try:
        return template.format(**fmt)
    except (KeyError, IndexError):
        return template


def service_label(code: str, language: str = FALLBACK_LANGUAGE) -> str:
    for service in SERVICE_CATALOG:
        if service["code"] == code:
            return service["labels"].get(language) or service["labels"][FALLBACK_LANGUAGE]
    return code


def working_hours(language: str = FALLBACK_LANGUAGE) -> str:
    return WORKING_HOURS.get(language) or WORKING_HOURS[FALLBACK_LANGUAGE]
