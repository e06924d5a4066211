"""
Built-in automation sequence templates.

Installed per organization with one call (automation_sequence_service.install_template).
Messages use the variables supported by automation_variables.render_template.
Wait steps carry the delay; message steps following them use delay_minutes=0.
"""

SEQUENCE_TEMPLATES = [
    {
        "name": "New Lead Welcome Sequence",
        "description": "Welcome new leads right away and follow up within 24 hours to book a trial class",
        "trigger_key": "new_lead",
        "steps": [
            {
                "name": "Immediate Welcome SMS",
                "action_type": "send_sms",
                "message": """Hi {{firstName}}! Thanks for your interest in {{businessName}}.

Someone from our team will reach out within 24 hours to set up your FREE trial class. Questions? Just text us back.
- {{preferredName}}""",
            },
            {
                "name": "Wait 24 Hours",
                "action_type": "wait",
                "delay_minutes": 1440,
            },
            {
                "name": "Follow-up Email",
                "action_type": "send_email",
                "subject": "Your FREE Trial Class Awaits!",
                "message": """Hi {{firstName}},

Following up on your interest in {{businessName}}. In your free trial class you will meet our instructors, take a real class and learn a few basics, with no pressure.

Book a time here: {{bookingLink}}
Or reply to this email, or text us at {{dojoPhone}}.

See you on the mat,
{{preferredName}}
{{businessName}}""",
            },
        ],
    },
    {
        "name": "Trial Class Reminder",
        "description": "Remind leads before their scheduled trial class to reduce no-shows",
        "trigger_key": "trial_scheduled",
        "steps": [
            {
                "name": "Wait Until 24 Hours Before",
                "action_type": "wait",
                "delay_minutes": 1440,
            },
            {
                "name": "24-Hour Reminder",
                "action_type": "send_sms",
                "message": """Hi {{firstName}}! Friendly reminder that your FREE trial class at {{businessName}} is tomorrow.

Reply CONFIRM if you're coming, or text us to reschedule.
- {{preferredName}}""",
            },
            {
                "name": "Wait Until 2 Hours Before",
                "action_type": "wait",
                "delay_minutes": 1320,
            },
            {
                "name": "2-Hour Reminder",
                "action_type": "send_sms",
                "message": "Hi {{firstName}}! Your trial class at {{businessName}} starts in 2 hours. See you soon!",
            },
        ],
    },
    {
        "name": "Trial No-Show Follow-up",
        "description": "Re-engage leads who missed their trial class",
        "trigger_key": "trial_no_show",
        "steps": [
            {
                "name": "Immediate Check-in",
                "action_type": "send_sms",
                "message": """Hi {{firstName}}, we missed you at your trial class today at {{businessName}}. No worries, want to pick another time?
- {{preferredName}}""",
            },
            {
                "name": "Wait 48 Hours",
                "action_type": "wait",
                "delay_minutes": 2880,
            },
            {
                "name": "Second Chance Email",
                "action_type": "send_email",
                "subject": "Let's Reschedule Your FREE Trial at {{businessName}}",
                "message": """Hi {{firstName}},

Your free trial class at {{businessName}} is still waiting for you, and it does not expire.

Pick a new time: {{scheduleLink}}
Text: {{dojoPhone}}
Email: {{dojoEmail}}

{{preferredName}}
{{businessName}}""",
            },
        ],
    },
    {
        "name": "Welcome New Student",
        "description": "Onboard newly enrolled students",
        "trigger_key": "enrollment",
        "steps": [
            {
                "name": "Welcome Email",
                "action_type": "send_email",
                "subject": "Welcome to the {{businessName}} family!",
                "message": """Hi {{firstName}},

Welcome aboard! A short video from your instructor: {{instructorVideoLink}}
Grab the app to see the class schedule: {{appDownloadLink}}

{{preferredName}}
{{businessName}}""",
            },
            {
                "name": "Wait 7 Days",
                "action_type": "wait",
                "delay_minutes": 10080,
            },
            {
                "name": "First Week Check-in",
                "action_type": "send_sms",
                "message": "Hi {{firstName}}, how was your first week at {{businessName}}? Questions anytime: {{aiChatLink}}",
            },
        ],
    },
    {
        "name": "Missed Class Check-in",
        "description": "Check in with students after a missed class",
        "trigger_key": "missed_class",
        "steps": [
            {
                "name": "Missed You SMS",
                "action_type": "send_sms",
                "delay_minutes": 60,
                "message": "Hi {{firstName}}, we missed you in class today! Next classes: {{scheduleLink}} - {{preferredName}}",
            },
        ],
    },
    {
        "name": "Re-engagement Sequence",
        "description": "Win back students who have not attended in 30+ days",
        "trigger_key": "inactive_student",
        "steps": [
            {
                "name": "We Miss You Email",
                "action_type": "send_email",
                "subject": "We Miss You at {{businessName}}!",
                "message": """Hi {{firstName}},

We noticed you haven't been to class in a while. Life gets busy, we get it.

Come back this week and your next month is 20% off: {{comebackOfferLink}}

{{preferredName}}
{{businessName}}""",
            },
            {
                "name": "Wait 7 Days",
                "action_type": "wait",
                "delay_minutes": 10080,
            },
            {
                "name": "Follow-up Call",
                "action_type": "ai_phone_call",
                "call_duration_seconds": 180,
                "message": """Hi {{firstName}}, this is {{aiName}} calling from {{businessName}}. We'd love to see you back on the mat, and your 20% comeback offer is still open this week. Text us at {{dojoPhone}} to pick a class.""",
            },
        ],
    },
    {
        "name": "Membership Renewal Reminder",
        "description": "Remind students to renew before their membership expires",
        "trigger_key": "renewal_due",
        "steps": [
            {
                "name": "30-Day Renewal Notice",
                "action_type": "send_email",
                "subject": "Your {{businessName}} Membership Renews Soon",
                "message": """Hi {{firstName}},

Your membership at {{businessName}} renews in 30 days. Review your billing details here: {{billingLink}}

Thanks for training with us!
{{preferredName}}""",
            },
            {
                "name": "Wait 23 Days",
                "action_type": "wait",
                "delay_minutes": 33120,
            },
            {
                "name": "7-Day Reminder",
                "action_type": "send_sms",
                "message": "Hi {{firstName}}, your {{businessName}} membership renews in 7 days. Billing: {{billingLink}}",
            },
        ],
    },
    {
        "name": "Birthday Celebration",
        "description": "Birthday wishes with a free private lesson offer",
        "trigger_key": "custom",
        "steps": [
            {
                "name": "Birthday SMS",
                "action_type": "send_sms",
                "message": "Happy Birthday, {{firstName}}! Everyone at {{businessName}} wishes you a great day. Your gift: a FREE private lesson this month. Text back to book! - {{preferredName}}",
            },
            {
                "name": "Refer a Friend",
                "action_type": "send_email",
                "subject": "A birthday gift you can share",
                "message": """Hi {{firstName}},

Bring a friend to class this month and they train free for a week: {{referralLink}}

{{preferredName}}
{{businessName}}""",
            },
        ],
    },
]


def list_templates() -> list[dict]:
    """Template summaries for pickers (no message bodies)."""
    return [
        {
            "name": t["name"],
            "description": t["description"],
            "trigger_key": t["trigger_key"],
            "step_count": len(t["steps"]),
        }
        for t in SEQUENCE_TEMPLATES
    ]


def get_template(name: str) -> dict | None:
    for template in SEQUENCE_TEMPLATES:
        if template["name"] == name:
            return template
    return None
