import requests


GREEN = 3066993
RED = 15158332
BLUE = 3447003


def field(name, value, inline=True):
    return {"name": name, "value": str(value), "inline": inline}


def send_embed(webhook_url, title, color, fields):
    """Post one embed to a Discord webhook. Failures are printed, never raised."""
    if not webhook_url:
        return False
    try:
        requests.post(webhook_url, json={
            "embeds": [{
                "title": title,
                "color": color,
                "fields": fields
            }]
        }, timeout=5)
        return True
    except Exception as e:
        print("Discord webhook failed:", e)
        return False
