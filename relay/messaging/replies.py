"""User-facing reply texts (Spanish, like the persona)."""
import html
import re

from audio.settings import VoiceSettings

UNAUTHORIZED = "❌ No estás autorizado para usar este bot.\nTu ID: {user_id}\nContacta al administrador."
UNEXPECTED_ERROR = "❌ Lo siento, ocurrió un error inesperado al procesar tu solicitud."
BUSY = "⏳ Ya estoy procesando tu solicitud anterior. Por favor, espera un momento."
BUSY_BEFORE_AUDIO = "⏳ Ya estoy procesando tu solicitud anterior. Por favor, espera antes de enviar el audio para transformar."

CHAT_DISABLED = "⚠️ La función de chat con IA está desactivada. Solo los comandos /t2v, /v2v y /help están disponibles."
CHAT_COMMAND_DISABLED = "⚠️ La función de chat con IA (/t) está desactivada."
RESET_DISABLED = "⚠️ La función de chat con IA no está activa, no hay conversación que reiniciar."
RESET_DONE = "🔄 Tu conversación conmigo ha sido reiniciada. Podemos empezar de nuevo."

CHAT_USAGE = "⚠️ Debes proporcionar un mensaje después de /t.\nEjemplo: <code>/t ¿Cómo fue el rodaje?</code>"
THINKING = "🤔 Pensando..."
CHAT_ERROR = "❌ Error al contactar con la IA: {error}"

SPEECH_USAGE = "Uso correcto: <code>/t2v [-s 0.5] [-x 0.8] [-v 1.1] \"Tu mensaje aquí\"</code>"
SPEECH_PARSE_ERROR = "⚠️ Error en las opciones: {error}\n" + SPEECH_USAGE
SPEECH_EMPTY = (
    "⚠️ No proporcionaste texto para convertir a voz después de las opciones.\n"
    "Ejemplo: <code>/t2v -s 0.4 \"Hola mundo\"</code>"
)
SPEECH_PREPARING = "🎤 Preparando conversión a voz..."
SPEECH_GENERATING = "🗣️ Generando audio con ElevenLabs..."
SPEECH_SENDING = "📤 Enviando mensaje de voz..."
SPEECH_ERROR = "❌ Error al generar la voz: {error}"

VOICE_ARMED = "✅ Listo. Ahora envíame el mensaje de voz o el archivo de audio que quieres transformar."
VOICE_ALREADY_ARMED = "🎙️ Ya estoy esperando tu mensaje de voz o archivo de audio. ¡Envíalo ahora!"
VOICE_ARM_ERROR = "❌ Hubo un error al iniciar la transformación de voz."
VOICE_CANCELLED_BY_TEXT = (
    "🎙️ Estaba esperando un mensaje de voz o audio para transformar (/v2v). "
    "Como enviaste texto, he cancelado esa operación. Usa /v2v de nuevo si necesitas transformar un audio."
)
VOICE_CANCELLED_BY_COMMAND = "🎙️ He cancelado la transformación de voz pendiente (/v2v)."
VOICE_UNSOLICITED = (
    "🎙️ Recibí tu {label}. Si querías transformarlo a la voz de Javier, por favor, "
    "usa primero el comando /v2v y luego envía el audio."
)
VOICE_RECEIVED = "🎙️ Recibido tu {label}. Descargando y preparando..."
VOICE_TRANSFORMING = "⚙️ Transformando audio a la voz de Javier..."
VOICE_SENDING = "📤 Enviando mensaje de voz transformado..."
VOICE_ERROR = "❌ Error al transformar el audio: {error}"

LABELS = {
    "voice": "mensaje de voz",
    "audio": "archivo de audio",
}

HELP_FALLBACK = "Error al mostrar la ayuda. Comandos: /t, /t2v, /v2v, /reset, /help"


def build_help(defaults: VoiceSettings) -> str:
    """Help message in Telegram HTML."""
    return f"""🎬 Bot de Javier Soto - Asistente de Dirección

Puedes conversar conmigo como si estuvieras hablando con Javier Soto.

Comandos:
/t mensaje - Procesa el mensaje con GPT y responde con texto (si GPT está habilitado).
/t2v [opciones] "mensaje" - Convierte el mensaje directamente a voz.
   Opciones (opcionales):
    <code>-s valor</code> : Estabilidad (0.0 a 1.0, +estable vs +expresivo, default: {defaults.stability})
    <code>-x valor</code> : Exageración del estilo (&gt;= 0.0, default: {defaults.style})
    <code>-v valor</code> : Velocidad (0.5 a 2.0, default: {defaults.speed})
    <i>Ejemplo:</i> <code>/t2v -s 0.4 -v 1.1 "Este es un mensaje de prueba."</code>
/v2v - Pide un mensaje de voz/audio para transformarlo a la voz de Javier. Envía el audio después de usar este comando.
/reset - Reinicia tu conversación actual con GPT.
/help - Mostrar esta ayuda.

Consejos para ElevenLabs (/t2v):
• Añade pausas naturales con puntos suspensivos (...)
• Usa expresiones como "Mmm...", "Eh..." para sonar más natural.
• Usa tags para pausas: <code>&lt;break /&gt;</code> (corta) o <code>&lt;break time="Xs"/&gt;</code> (X segundos).

Simplemente escribe un mensaje para hablar conmigo (usará GPT si está habilitado)."""


def to_plain(text: str) -> str:
    """Strip Telegram HTML tags for the plain-text fallback."""
    return html.unescape(re.sub(r"</?(code|i|b)>", "", text))


def escape(text: str) -> str:
    return html.escape(text, quote=False)
