#!/usr/bin/env python3
"""
routes_account.py

Account management pages under /account:

  /account/edit                    change password / change email
  /account/channels                register / delete owned channels
  /account/profile                 profile image + text
  /account/passwordreset           request a reset link by email
  /account/passwordrecover/<hash>  redeem a reset link for a new password
"""

import logging
from datetime import datetime, timedelta, timezone

from flask import abort, current_app, g, redirect

import config
from auth_session import cookie_domain, gen_session, set_auth_cookies
from constants import ADMIN_RANK, MAX_PASSWORD_LENGTH, MAX_PROFILE_FIELD_LENGTH
from database import (
    DATABASE_ERROR,
    AccountError,
    add_password_reset,
    delete_password_reset,
    drop_channel,
    get_email,
    get_profile,
    get_user,
    list_user_channels,
    lookup_channel,
    lookup_password_reset,
    register_channel,
    set_email,
    set_password,
    set_profile,
    verify_login,
)
from emailer import is_mail_enabled, send_email
from realtime.channels import is_channel_loaded, reload_channel
from security import log_audit_event
from utilities import generate_password, is_valid_email, is_valid_user_name, random_salt, sha1
from webserver import form_str, real_ip, redirect_https, send_page, verify_csrf


def _user_rank() -> int:
    return int((g.user or {}).get("global_rank") or 0)


def register_account_routes(app, settings, limiter=None):
    def _limit(rule, **kwargs):
        """Apply Flask-Limiter rule if available."""
        if limiter is None:
            return lambda f: f
        return limiter.limit(rule, **kwargs)

    def _socketio():
        return current_app.config.get("CHANSYNC_SOCKETIO")

    @app.route("/account", methods=["GET"])
    def account_root():
        return redirect("/login")

    # ------------------------------------------------------------------
    # /account/edit
    # ------------------------------------------------------------------
    @app.route("/account/edit", methods=["GET"])
    def account_edit_page():
        resp = redirect_https(settings)
        if resp is not None:
            return resp
        return send_page("account-edit.html")

    @app.route("/account/edit", methods=["POST"])
    @_limit(settings.get("rate_limit_account_edit") or "10 per minute")
    def account_edit():
        verify_csrf()

        action = form_str("action")
        if action == "change_password":
            return _change_password()
        if action == "change_email":
            return _change_email()
        abort(400)

    def _change_password():
        name = form_str("name")
        old_password = form_str("oldpassword")
        new_password = form_str("newpassword")
        if name is None or old_password is None or new_password is None:
            abort(400)

        if not new_password:
            return send_page("account-edit.html", error_message="New password must not be empty")
        if not g.user:
            return send_page("account-edit.html", error_message="You must be logged in to change your password")

        new_password = new_password[:MAX_PASSWORD_LENGTH]

        try:
            verify_login(name, old_password)
            set_password(name, new_password)
        except AccountError as e:
            return send_page("account-edit.html", error_message=str(e))

        ip = real_ip()
        log_audit_event(ip, "account", name, f"changed password for {name}")

        try:
            user = get_user(name)
        except AccountError as e:
            return send_page("account-edit.html", error_message=str(e))

        resp = app.make_response(send_page("account-edit.html", success_message="Password changed."))
        # Only the session of the account being edited is reissued.
        if user["name"].lower() == g.user["name"].lower():
            expiration = g.auth_expiration or (
                datetime.now(timezone.utc) + timedelta(days=config.auth_cookie_days(settings))
            )
            token = gen_session(user, expiration)
            set_auth_cookies(
                resp,
                token,
                int(user.get("global_rank") or 0),
                expiration,
                domain=cookie_domain(settings),
            )
        return resp

    def _change_email():
        name = form_str("name")
        password = form_str("password")
        email = form_str("email")
        if name is None or password is None or email is None:
            abort(400)

        if email and not is_valid_email(email):
            return send_page("account-edit.html", error_message="Invalid email address")

        try:
            verify_login(name, password[:MAX_PASSWORD_LENGTH])
            set_email(name, email)
        except AccountError as e:
            return send_page("account-edit.html", error_message=str(e))

        log_audit_event(real_ip(), "account", name, f"changed email for {name} to {email}")
        return send_page("account-edit.html", success_message="Email address changed.")

    # ------------------------------------------------------------------
    # /account/channels
    # ------------------------------------------------------------------
    @app.route("/account/channels", methods=["GET"])
    def account_channels_page():
        resp = redirect_https(settings)
        if resp is not None:
            return resp

        if not g.user:
            return send_page("account-channels.html", channels=[])
        try:
            channels = list_user_channels(g.user["name"])
        except AccountError:
            channels = []
        return send_page("account-channels.html", channels=channels)

    @app.route("/account/channels", methods=["POST"])
    @_limit(settings.get("rate_limit_channels") or "10 per minute")
    def account_channels():
        verify_csrf()

        action = form_str("action")
        if action == "new_channel":
            return _new_channel()
        if action == "delete_channel":
            return _delete_channel()
        abort(400)

    def _new_channel():
        name = form_str("name")
        if name is None:
            abort(400)

        if not g.user:
            return send_page("account-channels.html", channels=[])

        def _render(channels, error=None):
            return send_page("account-channels.html", channels=channels, new_channel_error=error)

        try:
            channels = list_user_channels(g.user["name"])
        except AccountError as e:
            return _render([], str(e))

        if config.is_reserved_channel_name(settings, name):
            return _render(channels, "That channel name is reserved")

        limit = config.max_channels_per_user(settings)
        if len(channels) >= limit and _user_rank() < ADMIN_RANK:
            return _render(channels, f"You are not allowed to register more than {limit} channels.")

        try:
            channel = register_channel(name, g.user["name"])
        except AccountError as e:
            return _render(channels, str(e))

        ip = real_ip()
        log_audit_event(
            g.user["name"],
            "channel",
            channel["name"],
            f"{g.user['name']}@{ip} registered channel {channel['name']}",
        )
        if is_channel_loaded(channel["name"]):
            reload_channel(_socketio(), channel["name"], "Channel reloading")
        channels.append(channel)
        return _render(channels)

    def _delete_channel():
        name = form_str("name")
        if name is None:
            abort(400)

        if not g.user:
            return send_page("account-channels.html", channels=[])

        def _render(channels, error=None):
            return send_page("account-channels.html", channels=channels, delete_channel_error=error)

        def _own_channels():
            try:
                return list_user_channels(g.user["name"])
            except AccountError:
                return []

        try:
            channel = lookup_channel(name)
        except AccountError as e:
            return _render([], str(e))

        if channel["owner"].lower() != g.user["name"].lower() and _user_rank() < ADMIN_RANK:
            return _render(_own_channels(), "You do not have permission to delete this channel")

        try:
            drop_channel(name)
        except AccountError as e:
            return _render(_own_channels(), str(e))

        ip = real_ip()
        log_audit_event(
            g.user["name"],
            "channel",
            channel["name"],
            f"{g.user['name']}@{ip} deleted channel {channel['name']}",
        )
        if is_channel_loaded(channel["name"]):
            reload_channel(
                _socketio(),
                channel["name"],
                "This channel has been deleted",
                clear_registered=True,
            )

        try:
            channels = list_user_channels(g.user["name"])
        except AccountError as e:
            return _render([], str(e))
        return _render(channels)

    # ------------------------------------------------------------------
    # /account/profile
    # ------------------------------------------------------------------
    @app.route("/account/profile", methods=["GET"])
    def account_profile_page():
        resp = redirect_https(settings)
        if resp is not None:
            return resp

        if not g.user:
            return send_page("account-profile.html", profile_image="", profile_text="")

        try:
            profile = get_profile(g.user["name"])
        except AccountError as e:
            return send_page("account-profile.html", profile_image="", profile_text="", profile_error=str(e))
        return send_page(
            "account-profile.html",
            profile_image=profile["image"],
            profile_text=profile["text"],
            profile_error=None,
        )

    @app.route("/account/profile", methods=["POST"])
    @_limit(settings.get("rate_limit_profile") or "10 per minute")
    def account_profile():
        verify_csrf()

        if not g.user:
            return send_page(
                "account-profile.html",
                profile_image="",
                profile_text="",
                profile_error="You must be logged in to edit your profile",
            )

        image = (form_str("image") or "").strip()[:MAX_PROFILE_FIELD_LENGTH]
        text = (form_str("text") or "").strip()[:MAX_PROFILE_FIELD_LENGTH]

        try:
            set_profile(g.user["name"], {"image": image, "text": text})
        except AccountError as e:
            return send_page("account-profile.html", profile_image="", profile_text="", profile_error=str(e))

        return send_page("account-profile.html", profile_image=image, profile_text=text, profile_error=None)

    # ------------------------------------------------------------------
    # /account/passwordreset
    # ------------------------------------------------------------------
    @app.route("/account/passwordreset", methods=["GET"])
    def password_reset_page():
        resp = redirect_https(settings)
        if resp is not None:
            return resp
        return send_page("account-passwordreset.html", reset=False, reset_email="", reset_err=None)

    @app.route("/account/passwordreset", methods=["POST"])
    @_limit(settings.get("rate_limit_password_reset") or "5 per minute")
    def password_reset():
        verify_csrf()

        name = form_str("name")
        email = form_str("email")
        if name is None or email is None:
            abort(400)

        def _fail(message, reset_email=""):
            return send_page("account-passwordreset.html", reset=False, reset_email=reset_email, reset_err=message)

        if not is_valid_user_name(name):
            return _fail(f"Invalid username '{name}'")

        try:
            actual_email = get_email(name)
        except AccountError as e:
            return _fail(str(e))

        if actual_email != email.strip():
            return _fail(f"Provided email does not match the email address on record for {name}")
        if actual_email == "":
            return _fail(
                f"{name} doesn't have an email address on record.  Please contact an "
                "administrator to manually reset your password."
            )

        hours = config.password_reset_hours(settings)
        reset_hash = sha1(random_salt(64))
        expire = datetime.now(timezone.utc) + timedelta(hours=hours)
        ip = real_ip()

        try:
            add_password_reset(ip=ip, name=name, email=actual_email, hash=reset_hash, expire=expire)
        except AccountError as e:
            return _fail(str(e))

        log_audit_event(ip, "account", name, f"{ip} requested password recovery for {name} <{actual_email}>")

        if not is_mail_enabled(settings):
            return _fail(
                "This server does not have mail support enabled.  Please contact an "
                "administrator for assistance.",
                reset_email=actual_email,
            )

        base = config.full_address(settings)
        link = f"{base}/account/passwordrecover/{reset_hash}"
        body = (
            f"A password reset request was issued for your account '{name}' on "
            f"{config.site_title(settings)}.  If you did not make this request, you can "
            "safely ignore this email.  To reset your password, open the following link "
            f"in your browser:\n\n{link}\n\n"
            f"This link expires in {hours} hours.\n"
        )
        ok, info = send_email(settings, to_email=actual_email, subject="Password reset request", body_text=body)
        if not ok:
            logging.error("Password reset mail for %s failed: %s", name, info)
            return _fail(
                "Sending reset email failed.  Please contact an administrator for assistance.",
                reset_email=actual_email,
            )

        return send_page("account-passwordreset.html", reset=True, reset_email=actual_email, reset_err=None)

    # ------------------------------------------------------------------
    # /account/passwordrecover/<hash>
    # ------------------------------------------------------------------
    @app.route("/account/passwordrecover/<reset_hash>", methods=["GET"])
    def password_recover(reset_hash):
        ip = real_ip()

        def _fail(message):
            return send_page("account-passwordrecover.html", recovered=False, recover_err=message)

        try:
            row = lookup_password_reset(reset_hash)
        except AccountError as e:
            return _fail(str(e))

        expire = row["expire"]
        if expire.tzinfo is None:
            expire = expire.replace(tzinfo=timezone.utc)
        if datetime.now(timezone.utc) >= expire:
            return _fail(
                "This password recovery link has expired.  Password recovery links are "
                f"valid only for {config.password_reset_hours(settings)} hours after submission."
            )

        new_password = generate_password(10)
        try:
            set_password(row["name"], new_password)
        except AccountError:
            return _fail(DATABASE_ERROR)

        try:
            delete_password_reset(reset_hash)
        except AccountError as e:
            logging.warning("Could not delete used password reset for %s: %s", row["name"], e)

        log_audit_event(ip, "account", row["name"], f"{ip} recovered password for {row['name']}")
        return send_page("account-passwordrecover.html", recovered=True, recover_pw=new_password)
