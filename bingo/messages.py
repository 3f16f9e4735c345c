"""
Registro: outbound WhatsApp message registry (Spanish).
Never hardcode text in services; always use get_message(key, **values).
"""

MESSAGES = {
    "otp": (
        "🔐 Tu código de verificación de Pelícano TV es: {code}\n\n"
        "⚠️ No lo compartas con nadie.\n\n"
        "_Este código expira en {minutes} minutos._"
    ),
    "welcome": (
        "🎉 ¡Bienvenido/a {first_name} {last_name}!\n"
        "✅ Tu registro en *Pelícano TV* ha sido completado exitosamente.\n\n"
        "📱 Ya formas parte de nuestra comunidad y podrás recibir notificaciones importantes.\n\n"
        "🔔 Te mantendremos informado sobre:\n"
        "✅ *Bingo Amigo Prime*\n"
        "✅ *Noticias LIBERTENSES*\n"
        "✅ *Podcast PTG*\n\n"
        "¡Gracias por registrarte con nosotros!\n\n"
        "*Equipo Pelícano TV* 🚀"
    ),
    "social": (
        "📲 *¡Síguenos en todas nuestras redes como @pelicanotvcanal, "
        "el medio digital de los libertenses!*\n"
        "👉 *Facebook:* facebook.com/pelicanotvcanal\n"
        "👉 *TikTok:* tiktok.com/@pelicanotvcanal\n"
        "👉 *Instagram:* instagram.com/pelicanotvcanal\n"
        "👉 *YouTube:* youtube.com/@PelicanoTVcanal"
    ),
    "table_caption": (
        "🎯 ¡Hola {first_name}!\n\n"
        "¡Tu tabla de *BINGO AMIGO PRIME* está lista! 🎉\n\n"
        "📋 *Código de tabla:* {table_code}\n"
        "🎲 Ya puedes participar en nuestros bingos!\n\n"
        "¡Guarda bien este PDF para participar! 🍀\n\n"
        "*Equipo Pelícano TV* 🚀"
    ),
    "table_confirmation": (
        "✅ *Registro completado*\n\n"
        "Tu registro y tabla de BINGO (rango {table_range}) han sido creados exitosamente.\n\n"
        "📱 ¡Ya estás listo para participar!\n\n"
        "*Equipo Pelícano TV* 🚀"
    ),
}


def get_message(key: str, **values) -> str:
    """
    Return the message for key with values substituted.
    Unknown keys return the key itself so a missing template is visible, not fatal.
    """
    template = MESSAGES.get(key)
    if template is None:
        return key or ""
    return template.format(**values)
