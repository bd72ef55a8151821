# User-facing (Hebrew) messages. Internal error details stay in English in the logs.

def format_amount(amount) -> str:
    return f"{amount:.2f}"


def format_date(value) -> str:
    return value.strftime("%d.%m.%Y") if value else ""


UPGRADE_SUCCESS = "מנויך שודרג בהצלחה ל-{plan}! חויבת ב-₪{amount} עבור התקופה הנוכחית."
DOWNGRADE_SCHEDULED = "מנויך ישתנה ל-{plan} ב-{date}. עד אז, תמשיך ליהנות מ-{current_plan}."
DOWNGRADE_CANCELLED = "השינוי למנוי {plan} בוטל. תמשיך ליהנות מ-{plan}."
PRORATION_EXPLANATION = (
    "תחויב ₪{amount} עכשיו עבור {days} הימים הנותרים במחזור התשלום הנוכחי. "
    "התשלום הבא יהיה ₪{next_amount} ב-{date}."
)

PAYMENT_PAGE_CREATED = "דף התשלום נוצר בהצלחה. יש להשלים את התשלום כדי להפעיל את המנוי."
PAYMENT_PAGE_FAILED = "לא הצלחנו לפתוח את דף התשלום. אנא פנה לתמיכה טכנית."
ALREADY_SUBSCRIBED = "כבר קיים לך מנוי פעיל או ממתין לתשלום."
ELIGIBLE = "ניתן להירשם למנוי חדש."
PLAN_NOT_AVAILABLE = "תוכנית המנוי אינה זמינה."
SUBSCRIPTION_NOT_FOUND = "המנוי לא נמצא."
PAYMENT_METHOD_NOT_FOUND = "לא נמצא אמצעי תשלום שמור."
CHARGE_FAILED = "החיוב נכשל. לא בוצע שינוי במנוי."
GATEWAY_UPDATE_FAILED = "עדכון המנוי מול חברת הסליקה נכשל. לא בוצע שינוי במנוי."
MANUAL_REVIEW_REQUIRED = "החיוב בוצע אך עדכון המנוי נכשל. צוות התמיכה יטפל בנושא בהקדם."
PLAN_CHANGE_NOT_ALLOWED = "לא ניתן לבצע את שינוי המנוי המבוקש."
NO_PENDING_DOWNGRADE = "אין שינוי מנוי ממתין לביטול."
CANCEL_FAILED = "ביטול המנוי מול חברת הסליקה נכשל. אנא נסה שוב מאוחר יותר."
CANCELLED_IMMEDIATELY = "המנוי בוטל."
CANCELLED_END_OF_CYCLE = "המנוי יבוטל בתום תקופת החיוב הנוכחית ב-{date}."
SUBSCRIPTION_ACTIVATED = "המנוי הופעל בהצלחה."
SUBSCRIPTION_RENEWED = "המנוי חודש בהצלחה."
SUBSCRIPTION_CANCELLED_UNPAID = "המנוי בוטל מכיוון שהתשלום לא הושלם."
SUBSCRIPTION_EXPIRED = "המנוי פג תוקף לאחר כישלון בחיוב החודשי."
PAYMENT_STILL_PROCESSING = "התשלום עדיין בעיבוד. נבדוק שוב בקרוב."
STATUS_CHECK_FAILED = "לא הצלחנו לבדוק את סטטוס התשלום. נבדוק שוב בקרוב."
POLLING_DISABLED = "בדיקת סטטוס התשלומים מושבתת זמנית."
ALREADY_PROCESSED = "המנוי כבר עודכן."
ACTIVATION_REJECTED = "התשלום לא אושר ולכן המנוי לא הופעל."
