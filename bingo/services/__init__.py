"""
Registro services.

transport      WhatsApp gateway client (text and media messages)
inventory      bingo table pool: assign, release, seed, stats
registration   OTP-gated registration and table delivery
table_ocr      keyword classifier for uploaded table photos
cohort         campaign recipient selection
personalization  campaign message placeholders
campaigns      campaign lifecycle and batch sender
scheduling     background timers
events         campaign progress pub/sub
log_service    SystemLog writer
"""
