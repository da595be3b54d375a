"""
Localized message templates.
Every table is keyed by language first; lookups fall back to English.
Templates use {variable} substitution with missing variables left in place.
"""
import hashlib
import logging
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_LANGUAGE = "en"

# === CONSENT + FLOW SELECTION ===

CONSENT_PROMPTS = {
    "en": {
        "body": (
            "To help you properly I will ask for some information and a few photos.\n\n"
            "Everything you share is used only for the doctor's evaluation.\n\n"
            "Privacy policy: {consent_link_url}"
        ),
        "approve": "I approve",
        "decline": "I decline",
        "footer": "Your data is kept safe.",
    },
    "tr": {
        "body": (
            "Size daha iyi yardımcı olabilmem için birkaç bilgi ve fotoğraf isteyeceğim.\n\n"
            "Paylaştığınız bilgiler yalnızca doktor değerlendirmesi için kullanılacaktır.\n\n"
            "KVKK Aydınlatma Metni: {consent_link_url}"
        ),
        "approve": "Onaylıyorum",
        "decline": "Onaylamıyorum",
        "footer": "Verileriniz güvende tutulacaktır.",
    },
    "ar": {
        "body": (
            "لمساعدتك بشكل أفضل، سأحتاج إلى بعض المعلومات والصور.\n\n"
            "المعلومات التي تشاركها ستُستخدم فقط لتقييم الطبيب.\n\n"
            "سياسة الخصوصية: {consent_link_url}"
        ),
        "approve": "أوافق",
        "decline": "لا أوافق",
        "footer": "بياناتك ستبقى آمنة.",
    },
    "fr": {
        "body": (
            "Pour mieux vous aider, j'aurai besoin de quelques informations et photos.\n\n"
            "Les informations partagées servent uniquement à l'évaluation médicale.\n\n"
            "Politique de confidentialité : {consent_link_url}"
        ),
        "approve": "J'approuve",
        "decline": "Je refuse",
        "footer": "Vos données seront protégées.",
    },
}

CONSENT_REMINDERS = {
    "en": "Before we continue, please confirm that you approve the privacy policy by replying \"yes\".",
    "tr": "Devam edebilmemiz için lütfen aydınlatma metnini onayladığınızı \"evet\" yazarak belirtin.",
    "ar": "قبل أن نتابع، يرجى تأكيد موافقتك على سياسة الخصوصية بالرد \"نعم\".",
    "fr": "Avant de continuer, merci de confirmer que vous acceptez la politique de confidentialité en répondant \"oui\".",
    "ru": "Прежде чем продолжить, пожалуйста, подтвердите согласие с политикой конфиденциальности, ответив \"да\".",
}

CONSENT_DECLINED = {
    "en": "Understood. We will not process your information. You can write to us anytime if you change your mind.",
    "tr": "Anlaşıldı. Bilgilerinizi işlemeyeceğiz. Fikrinizi değiştirirseniz bize her zaman yazabilirsiniz.",
    "ar": "مفهوم. لن نقوم بمعالجة معلوماتك. يمكنك مراسلتنا في أي وقت إذا غيرت رأيك.",
    "fr": "C'est noté. Nous ne traiterons pas vos informations. Écrivez-nous si vous changez d'avis.",
    "ru": "Понятно. Мы не будем обрабатывать ваши данные. Напишите нам, если передумаете.",
}

FLOW_SELECTION_PROMPTS = {
    "en": {
        "body": (
            "Thank you! How would you like to continue?\n\n"
            "Form: fill in your details quickly.\n"
            "Consultant: keep chatting with me."
        ),
        "form": "Continue with form",
        "chat": "Chat with consultant",
    },
    "tr": {
        "body": (
            "Teşekkürler! Nasıl devam etmek istersiniz?\n\n"
            "Form: Bilgilerinizi hızlıca form üzerinden doldurun.\n"
            "Danışman: Benimle sohbet ederek ilerleyin."
        ),
        "form": "Form ile devam",
        "chat": "Danışmanla devam",
    },
    "ar": {
        "body": (
            "شكراً! كيف تريد المتابعة؟\n\n"
            "النموذج: املأ معلوماتك بسرعة.\n"
            "المستشار: تابع الدردشة معي."
        ),
        "form": "متابعة بالنموذج",
        "chat": "الدردشة مع مستشار",
    },
    "fr": {
        "body": (
            "Merci ! Comment souhaitez-vous continuer ?\n\n"
            "Formulaire : remplissez rapidement vos informations.\n"
            "Consultant : continuez à discuter avec moi."
        ),
        "form": "Continuer avec le formulaire",
        "chat": "Discuter avec un consultant",
    },
}

FORM_LINK_MESSAGES = {
    "en": "Great choice! Please fill in the patient form here: {form_url}\nOur doctors will review it once it is complete.",
    "tr": "Harika seçim! Hasta bilgi formunu buradan doldurabilirsiniz: {form_url}\nForm tamamlandığında doktorlarımız değerlendirecektir.",
    "ar": "اختيار رائع! يرجى ملء نموذج المريض هنا: {form_url}\nسيقوم أطباؤنا بمراجعته بعد اكتماله.",
    "fr": "Excellent choix ! Remplissez le formulaire patient ici : {form_url}\nNos médecins l'examineront une fois complété.",
}

CHAT_FLOW_MESSAGES = {
    "en": "Perfect, I'm {agent_name} and I'll guide you. What treatment are you interested in?",
    "tr": "Harika, ben {agent_name}, size yardımcı olacağım. Hangi tedaviyle ilgileniyorsunuz?",
    "ar": "ممتاز، أنا {agent_name} وسأرافقك. ما العلاج الذي تهتم به؟",
    "fr": "Parfait, je suis {agent_name} et je vais vous accompagner. Quel traitement vous intéresse ?",
}

# === HANDOFF ===

HANDOFF_NOTICES = {
    "en": "Thank you for your patience. A member of our team will continue this conversation with you shortly.",
    "tr": "Sabrınız için teşekkürler. Ekibimizden bir uzman kısa süre içinde sizinle görüşmeye devam edecek.",
    "ar": "شكراً لصبرك. سيتابع أحد أعضاء فريقنا المحادثة معك قريباً.",
    "ru": "Спасибо за терпение. Наш специалист скоро продолжит с вами разговор.",
    "fr": "Merci pour votre patience. Un membre de notre équipe va poursuivre la conversation avec vous sous peu.",
}

# === FOLLOW-UPS ===

# Fallback nudges when the AI service is unavailable, keyed by attempt number
FOLLOWUP_FALLBACKS = {
    "en": {
        1: "Hi{name_suffix}! Just checking in. Do you have any questions I can help with?",
        2: "Hi{name_suffix}, I wanted to share that our doctors can give you a free assessment. Shall we continue where we left off?",
        3: "Hi{name_suffix}, this is my last message for now. Whenever you're ready, just write to me. Take care!",
    },
    "tr": {
        1: "Merhaba{name_suffix}! Aklınıza takılan bir soru var mı? Yardımcı olmaktan memnuniyet duyarım.",
        2: "Merhaba{name_suffix}, doktorlarımız size ücretsiz bir ön değerlendirme yapabilir. Kaldığımız yerden devam edelim mi?",
        3: "Merhaba{name_suffix}, şimdilik son mesajım. Hazır olduğunuzda bana yazmanız yeterli. Sağlıklı günler!",
    },
    "ar": {
        1: "مرحباً{name_suffix}! أردت الاطمئنان عليك. هل لديك أي أسئلة؟",
        2: "مرحباً{name_suffix}، يمكن لأطبائنا تقديم تقييم مجاني لك. هل نكمل من حيث توقفنا؟",
        3: "مرحباً{name_suffix}، هذه رسالتي الأخيرة الآن. عندما تكون مستعداً، راسلني فقط. مع أطيب التمنيات!",
    },
    "ru": {
        1: "Здравствуйте{name_suffix}! Хотела уточнить, остались ли у вас вопросы?",
        2: "Здравствуйте{name_suffix}, наши врачи могут провести бесплатную оценку. Продолжим с того места, где остановились?",
        3: "Здравствуйте{name_suffix}, это моё последнее сообщение. Когда будете готовы, просто напишите мне. Всего доброго!",
    },
    "fr": {
        1: "Bonjour{name_suffix} ! Je voulais prendre de vos nouvelles. Avez-vous des questions ?",
        2: "Bonjour{name_suffix}, nos médecins peuvent vous proposer une évaluation gratuite. On reprend là où on s'était arrêtés ?",
        3: "Bonjour{name_suffix}, c'est mon dernier message pour le moment. Écrivez-moi quand vous serez prêt(e). Prenez soin de vous !",
    },
}

# Tone hints handed to the AI for follow-up drafting
FOLLOWUP_HINTS = {
    "en": {
        1: "[SYSTEM: The patient has not replied. Write a short, friendly check-in. Do not repeat earlier questions verbatim.]",
        2: "[SYSTEM: Second follow-up. Add value: mention something useful about the treatment or the free doctor assessment.]",
        3: "[SYSTEM: Final follow-up. Write a warm goodbye that leaves the door open. No pressure.]",
    },
    "tr": {
        1: "[SYSTEM: Hasta yanıt vermedi. Kısa ve samimi bir hatır sorma mesajı yaz. Önceki soruları aynen tekrarlama.]",
        2: "[SYSTEM: İkinci takip. Değer kat: tedavi veya ücretsiz doktor değerlendirmesi hakkında faydalı bir bilgi ver.]",
        3: "[SYSTEM: Son takip. Kapıyı açık bırakan sıcak bir veda mesajı yaz. Baskı yapma.]",
    },
}

# === PHOTO TEMPLATES ===

PHOTO_TEMPLATE_CAPTIONS = {
    "en": {
        "hair_transplant": "Please send photos of your hair from these angles: front, top, back, left and right side.",
        "dental": "Please send a clear smile photo from the front and photos of your upper and lower teeth.",
        "rhinoplasty": "Please send photos of your nose from the front, both sides and from below.",
        "breast": "Please send photos from the front and both sides, standing straight.",
        "liposuction": "Please send full-body photos from the front, back and both sides.",
        "bbl": "Please send photos from the back and both sides, standing straight.",
        "arm_lift": "Please send photos of your arms raised, from the front and back.",
        "facelift": "Please send photos of your face from the front and both sides, without makeup.",
        "default": "Please send clear photos of the treatment area from several angles.",
    },
    "tr": {
        "hair_transplant": "Lütfen saçınızın şu açılardan fotoğraflarını gönderin: ön, tepe, arka, sol ve sağ yan.",
        "dental": "Lütfen önden net bir gülümseme fotoğrafı ile alt ve üst dişlerinizin fotoğraflarını gönderin.",
        "rhinoplasty": "Lütfen burnunuzun önden, iki yandan ve alttan fotoğraflarını gönderin.",
        "breast": "Lütfen dik durarak önden ve iki yandan fotoğraf gönderin.",
        "liposuction": "Lütfen önden, arkadan ve iki yandan tüm vücut fotoğrafı gönderin.",
        "bbl": "Lütfen dik durarak arkadan ve iki yandan fotoğraf gönderin.",
        "arm_lift": "Lütfen kollarınız kalkık şekilde önden ve arkadan fotoğraf gönderin.",
        "facelift": "Lütfen makyajsız olarak yüzünüzün önden ve iki yandan fotoğraflarını gönderin.",
        "default": "Lütfen tedavi bölgesinin farklı açılardan net fotoğraflarını gönderin.",
    },
    "ar": {
        "hair_transplant": "يرجى إرسال صور لشعرك من هذه الزوايا: الأمام، الأعلى، الخلف، الجانب الأيسر والأيمن.",
        "default": "يرجى إرسال صور واضحة لمنطقة العلاج من عدة زوايا.",
    },
    "ru": {
        "hair_transplant": "Пожалуйста, пришлите фото волос спереди, сверху, сзади, слева и справа.",
        "default": "Пожалуйста, пришлите чёткие фото зоны лечения с разных ракурсов.",
    },
    "fr": {
        "hair_transplant": "Merci d'envoyer des photos de vos cheveux : face, dessus, arrière, côtés gauche et droit.",
        "default": "Merci d'envoyer des photos nettes de la zone à traiter sous plusieurs angles.",
    },
}

# === AGENT NAMES ===

AGENT_NAME_POOLS = {
    "en": ["Emma", "Sophie", "Olivia", "Grace"],
    "tr": ["Elif", "Zeynep", "Ayşe", "Defne"],
    "ar": ["Layla", "Nour", "Mariam", "Sara"],
    "ru": ["Anna", "Maria", "Elena", "Sofia"],
    "fr": ["Camille", "Chloé", "Léa", "Manon"],
}


class SafeDict(dict):
    """Returns '{key}' for missing keys instead of raising KeyError."""

    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def localized(table: dict, language: Optional[str]):
    """Entry for `language`, falling back to English."""
    lang = (language or DEFAULT_LANGUAGE).lower()[:2]
    return table.get(lang) or table[DEFAULT_LANGUAGE]


def render(text: str, **kwargs) -> str:
    try:
        return text.format_map(SafeDict(kwargs))
    except (ValueError, IndexError) as e:
        logger.debug("Template rendering failed: %s", str(e))
        return text


def followup_fallback(language: Optional[str], attempt: int, name: Optional[str] = None) -> str:
    templates = localized(FOLLOWUP_FALLBACKS, language)
    text = templates.get(attempt) or templates[max(templates)]
    first_name = (name or "").split(" ")[0]
    return render(text, name_suffix=f" {first_name}" if first_name else "")


def followup_hint(language: Optional[str], attempt: int) -> str:
    hints = localized(FOLLOWUP_HINTS, language)
    return hints.get(attempt) or hints[max(hints)]


def photo_template_caption(treatment_category: str, language: Optional[str]) -> str:
    captions = localized(PHOTO_TEMPLATE_CAPTIONS, language)
    english = PHOTO_TEMPLATE_CAPTIONS[DEFAULT_LANGUAGE]
    return (
        captions.get(treatment_category)
        or captions.get("default")
        or english.get(treatment_category)
        or english["default"]
    )


def pick_agent_name(lead_id: str, language: Optional[str]) -> str:
    """Stable choice from the language's pool, keyed on the lead id."""
    pool = localized(AGENT_NAME_POOLS, language)
    index = int(hashlib.sha256(str(lead_id).encode()).hexdigest(), 16) % len(pool)
    return pool[index]
