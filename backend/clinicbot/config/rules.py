# /clinicbot/config/rules.py

import re

# This file contains the deterministic "rules engine" tables used by the
# intent classifier. Patterns are matched against NORMALIZED text (lower-case,
# ё folded to е, punctuation replaced by spaces), and are processed in table
# order, which defines their priority.

# Intent rules organized by priority: (intent_name, [compiled patterns]).
# Cancellation is listed before booking because "отменить запись" contains
# the booking keyword "запись".
INTENT_PATTERNS = [
    ("GREETING", [
        re.compile(r"\b(привет\w*|здравствуй\w*|добрый (день|вечер)|доброе утро|салам|сәлем\w*|салем)\b"),
        re.compile(r"^(hi|hello|hey|good (morning|afternoon|evening))\b"),
        re.compile(r"\b(начать|start)\b"),
    ]),
    ("CANCEL_APPOINTMENT", [
        re.compile(r"\b(отменить|отмена|отмените|cancel|перенести)\b"),
        re.compile(r"не смогу прийти"),
    ]),
    ("BOOK_APPOINTMENT", [
        re.compile(r"\b(записаться|запишите|записать|запись|прием|appointment)\b"),
        re.compile(r"\b(book|schedule)\b"),
        re.compile(r"врачу|доктору|стоматологу"),
    ]),
    ("CONFIRM_APPOINTMENT", [
        re.compile(r"\b(да|подтверждаю|подтвердить|confirm|yes)\b"),
        re.compile(r"\b(приду|буду)\b"),
        re.compile(r"все верно"),
    ]),
    ("GET_INFO", [
        re.compile(r"\b(информация|info|адрес|телефон|контакты|где находитесь)\b"),
        re.compile(r"\b(часы работы|график|расписание|когда работаете)\b"),
        re.compile(r"\b(услуги|цены|стоимость|прайс|services|prices|contacts|address|hours)\b"),
    ]),
    ("CHANGE_LANGUAGE", [
        re.compile(r"\b(язык|language|тіл|қазақша|казакша|русский|english)\b"),
        re.compile(r"сменить язык"),
    ]),
    ("HELP", [
        re.compile(r"\b(помощь|помогите|help|что умеешь|команды)\b"),
        re.compile(r"не понимаю"),
    ]),
    ("SMALL_TALK", [
        re.compile(r"\b(спасибо|благодарю|thanks|thank you|пока|до свидания|bye|goodbye)\b"),
        re.compile(r"как дела|как поживаете|how are you"),
    ]),
]

# Entity extraction patterns: entity type -> (pattern, capture group holding the value)
ENTITY_PATTERNS = [
    ("PHONE", re.compile(r"(?:\+7|\b8)[\s\-]?\d[\d\s\-]{9,}\d"), 0),
    ("DATE", re.compile(r"\b(\d{1,2})[.\-/](\d{1,2})(?:[.\-/](\d{2,4}))?\b"), 0),
    ("TIME", re.compile(r"\b([01]?\d|2[0-3]):([0-5]\d)\b"), 0),
    ("NAME", re.compile(r"(?:меня зовут|my name is|i am|i m)\s+([^\W\d_]+)"), 1),
    ("APPOINTMENT_ID", re.compile(r"(?:номер|запись|запись №|appointment|booking)\s*#?\s*(\d+)"), 1),
]

# Universal escape keywords: always cancel the active flow, whatever the step.
OVERRIDE_KEYWORDS = {
    "stop", "cancel", "back", "quit", "exit",
    "стоп", "отмена", "назад", "выйти", "выход",
    "тоқтат", "артқа",
}

AFFIRMATIVE_RESPONSES = {
    "да", "yes", "y", "confirm", "подтверждаю", "подтвердить", "ок", "ok", "okay",
    "верно", "конечно", "ага", "sure", "иә", "ия",
}
NEGATIVE_RESPONSES = {"нет", "no", "nope", "nah", "неа", "жоқ"}

# Button payloads are literal values; outside a flow they map straight to an
# intent (with optional entities) and are never run through the pattern table.
BUTTON_INTENTS = {
    "book_appointment": ("BOOK_APPOINTMENT", {}),
    "cancel_appointment": ("CANCEL_APPOINTMENT", {}),
    "clinic_info": ("GET_INFO", {"TOPIC": "general"}),
    "services_info": ("GET_INFO", {"TOPIC": "services"}),
    "contact_info": ("GET_INFO", {"TOPIC": "contacts"}),
    "change_language": ("CHANGE_LANGUAGE", {}),
    "help": ("HELP", {}),
}

# Prefixes for parameterized button payloads, e.g. "lang_en" or "confirm_42"
BUTTON_PREFIXES = {
    "lang_": ("CHANGE_LANGUAGE", "LANGUAGE"),
    "confirm_": ("CONFIRM_APPOINTMENT", "APPOINTMENT_ID"),
}

# Keywords used by the info handler to pick a sub-topic (matched as prefixes)
INFO_TOPIC_KEYWORDS = {
    "services": ("услуг", "цен", "стоимост", "прайс", "service", "price"),
    "contacts": ("контакт", "телефон", "адрес", "час", "график", "расписан", "contact", "address", "phone", "hour"),
}

# Words naming a language in a CHANGE_LANGUAGE request
LANGUAGE_KEYWORDS = {
    "ru": ("русск", "russian", "орыс"),
    "en": ("english", "англ"),
    "kk": ("қазақ", "казах", "казакш", "kazakh"),
}

# Small-talk sub-topics
THANK_KEYWORDS = ("спасибо", "благодар", "thank", "рахмет")
BYE_KEYWORDS = ("пока", "до свидания", "bye")

# Intents the probabilistic classifier is allowed to return
KNOWN_INTENTS = {name for name, _ in INTENT_PATTERNS} | {"UNKNOWN"}
