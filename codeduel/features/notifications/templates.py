"""Email templates for streak notifications and the weekly summary (subject, HTML and plain-text bodies)."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from html import escape
from typing import Any, Dict

_STYLE = """
      body { font-family: Arial, sans-serif; line-height: 1.6; color: #333; }
      .container { max-width: 600px; margin: 0 auto; padding: 20px; }
      .header { color: white; padding: 30px; text-align: center; border-radius: 10px 10px 0 0; }
      .content { background: #f9f9f9; padding: 30px; border-radius: 0 0 10px 10px; }
      .streak-box { background: #fff; border-radius: 10px; padding: 20px; text-align: center; margin: 20px 0; }
      .streak-number { font-size: 48px; font-weight: bold; }
      .challenge-item { background: white; padding: 15px; margin: 10px 0; border-radius: 5px; border-left: 4px solid #11998e; }
      .footer { text-align: center; color: #888; font-size: 12px; margin-top: 20px; }
"""


@dataclass(frozen=True)
class RenderedEmail:
    subject: str
    html: str
    text: str


def _page(header: str, accent: str, body: str, footer_note: str = "") -> str:
    year = datetime.now(timezone.utc).year
    note = f"<p>{footer_note}</p>" if footer_note else ""
    return f"""<!DOCTYPE html>
<html>
  <head><style>{_STYLE}</style></head>
  <body>
    <div class="container">
      <div class="header" style="background: {accent};"><h1>{header}</h1></div>
      <div class="content">{body}</div>
      <div class="footer"><p>&copy; {year} Code Duel. All rights reserved.</p>{note}</div>
    </div>
  </body>
</html>"""


def streak_broken(username: str, lost_streak: int, challenge_name: str) -> RenderedEmail:
    name, challenge = escape(username), escape(challenge_name)
    body = f"""
        <h2>Hey {name},</h2>
        <p>Yesterday's goal in <strong>{challenge}</strong> wasn't met, so your streak has been reset.</p>
        <div class="streak-box" style="border: 2px solid #ff6b6b;">
          <p>Streak lost</p>
          <div class="streak-number" style="color: #ff6b6b;">{lost_streak}</div>
          <p>days</p>
        </div>
        <p>Every expert was once a beginner. Solve a problem today and start a new streak.</p>
        <p><strong>The Code Duel Team</strong></p>"""
    text = (
        f"Hey {username},\n\n"
        f"Your {lost_streak}-day streak in {challenge_name} was broken.\n"
        "Solve a problem today to start a new one.\n\n"
        "The Code Duel Team"
    )
    return RenderedEmail(
        subject=f"Your {lost_streak}-day streak was broken",
        html=_page("Streak Update", "#764ba2", body),
        text=text,
    )


def streak_reminder(username: str, current_streak: int, challenge_name: str) -> RenderedEmail:
    name, challenge = escape(username), escape(challenge_name)
    body = f"""
        <h2>Hey {name},</h2>
        <p>You haven't completed today's challenge yet.</p>
        <div class="streak-box" style="border: 2px solid #f5576c;">
          <p>Your current streak</p>
          <div class="streak-number" style="color: #f5576c;">{current_streak}</div>
          <p>days in <strong>{challenge}</strong></p>
        </div>
        <p>The day resets at midnight UTC.</p>
        <p><strong>The Code Duel Team</strong></p>"""
    text = (
        f"Hey {username},\n\n"
        f"You haven't completed today's challenge in {challenge_name} yet. "
        f"Your current streak is {current_streak} days.\n"
        "The day resets at midnight UTC.\n\n"
        "The Code Duel Team"
    )
    return RenderedEmail(
        subject=f"Don't lose your {current_streak}-day streak! Complete today's challenge",
        html=_page("Streak Reminder", "#f5576c", body, "Don't want reminders? Update your notification preferences."),
        text=text,
    )


def weekly_summary(username: str, stats: Dict[str, Any]) -> RenderedEmail:
    """Seven-day rollup: completed days, problems solved, streaks and per-challenge standing."""
    name = escape(username)
    challenges = stats.get("active_challenges") or []
    rows = "".join(
        f"""
          <div class="challenge-item">
            <strong>{escape(c['name'])}</strong>
            <p>Rank: #{c['rank']} | Streak: {c['streak']} days | Completion: {c['completion_rate']}%</p>
          </div>"""
        for c in challenges
    )
    listing = f"<h3>Your Active Challenges:</h3>{rows}" if challenges else ""
    body = f"""
        <h2>Great work this week, {name}!</h2>
        <p>Week of {stats['week_start']} - {stats['week_end']}</p>
        <div class="streak-box" style="border: 2px solid #11998e;">
          <p>Problems solved: <strong>{stats['problems_solved']}</strong></p>
          <p>Days completed: <strong>{stats['days_completed']}/7</strong></p>
          <p>Current streak: <strong>{stats['current_streak']}</strong></p>
          <p>Longest streak: <strong>{stats['longest_streak']}</strong></p>
        </div>{listing}
        <p><strong>The Code Duel Team</strong></p>"""

    lines = [
        f"Hey {username},",
        "",
        f"Your week of {stats['week_start']} - {stats['week_end']}:",
        f"  Problems solved: {stats['problems_solved']}",
        f"  Days completed: {stats['days_completed']}/7",
        f"  Current streak: {stats['current_streak']}",
        f"  Longest streak: {stats['longest_streak']}",
    ]
    for c in challenges:
        lines.append(f"  {c['name']}: rank #{c['rank']}, {c['streak']}-day streak, {c['completion_rate']}% complete")
    lines += ["", "The Code Duel Team"]

    return RenderedEmail(
        subject="Your Weekly Code Duel Summary",
        html=_page("Weekly Summary", "#11998e", body),
        text="\n".join(lines),
    )


TEMPLATES = {
    "streak_broken": streak_broken,
    "streak_reminder": streak_reminder,
}


def render(template: str, username: str, streak: int, challenge_name: str) -> RenderedEmail:
    try:
        builder = TEMPLATES[template]
    except KeyError:
        raise ValueError(f"Unknown email template: {template}")
    return builder(username, streak, challenge_name)
