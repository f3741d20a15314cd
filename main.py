# main.py
# MedRemind (KivyMD) — PIN-gated medication reminder with encrypted local history.
#
# Run:  python main.py
#
# Buildozer notes (in buildozer.spec):
#   requirements = python3,kivy,kivymd,pyjnius,cryptography
#   services = Reminders:service/med_service.py
#   android.permissions = POST_NOTIFICATIONS,USE_BIOMETRIC

import asyncio
from datetime import datetime
from typing import Optional, Dict

from kivy.lang import Builder
from kivy.clock import Clock
from kivy.core.window import Window
from kivy.uix.widget import Widget
from kivy.animation import Animation
from kivy.metrics import dp
from kivy.graphics import Color, Line, RoundedRectangle, Rectangle, Ellipse
from kivy.properties import NumericProperty, ListProperty, StringProperty, BooleanProperty
from kivy.utils import platform as _kivy_platform, get_color_from_hex

from kivymd.app import MDApp
from kivymd.uix.dialog import MDDialog
from kivymd.uix.button import MDFlatButton, MDRaisedButton
from kivymd.uix.list import TwoLineIconListItem, OneLineListItem, IconLeftWidget
from kivymd.uix.textfield import MDTextField
from kivymd.uix.boxlayout import MDBoxLayout
from kivymd.uix.label import MDLabel

import medconfig
from medlog import logger, RING, clear_log
from medmodels import Medication
from medstore import MedStorage
from medhistory import (
    HistoryView, display_color, display_dosage, display_name, format_date_header, format_time, status_label,
)
from medskip import SkipDoseControl
from medschedule import upcoming_doses, needs_refill, start_reminder_service
from medauth import Authenticator, valid_pin

if _kivy_platform != "android" and hasattr(Window, "size"):
    Window.size = (420, 760)

# -------------------------
# Widgets
# -------------------------
class BackgroundGradient(Widget):
    top_color = ListProperty([0.10, 0.56, 0.18, 1])
    bottom_color = ListProperty([0.03, 0.16, 0.07, 1])

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.bind(pos=self._redraw, size=self._redraw)

    def _redraw(self, *_):
        self.canvas.before.clear()
        x, y = self.pos
        w, h = self.size
        with self.canvas.before:
            bands = 32
            for i in range(bands):
                t = i / (bands - 1)
                c = [a + (b - a) * t for a, b in zip(self.top_color[:3], self.bottom_color[:3])]
                Color(c[0], c[1], c[2], 1)
                Rectangle(pos=(x, y + h * i / bands), size=(w, h / bands + 1))

class GlassCard(Widget):
    radius = NumericProperty(dp(18))

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.bind(pos=self._redraw, size=self._redraw)

    def _redraw(self, *_):
        self.canvas.clear()
        x, y = self.pos
        w, h = self.size
        r = float(self.radius)
        with self.canvas:
            Color(1, 1, 1, 0.07)
            RoundedRectangle(pos=(x, y), size=(w, h), radius=[r])
            Color(1, 1, 1, 0.14)
            Line(rounded_rectangle=[x, y, w, h, r], width=dp(1.1))

class ColorDot(Widget):
    """Medication colour tag on a history row."""
    color = ListProperty([0.8, 0.8, 0.8, 1])

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.bind(pos=self._redraw, size=self._redraw, color=self._redraw)

    def _redraw(self, *_):
        self.canvas.clear()
        d = min(self.width, self.height) * 0.5
        cx, cy = self.center
        with self.canvas:
            Color(*self.color)
            Ellipse(pos=(cx - d / 2, cy - d / 2), size=(d, d))

def _to_int(text: str) -> int:
    try:
        return max(0, int(text))
    except (TypeError, ValueError):
        return 0

def _hex_color(value: str, fallback: str = "#cccccc"):
    try:
        return get_color_from_hex(value)
    except (ValueError, TypeError, IndexError):
        return get_color_from_hex(fallback)

class MedicationRow(MDBoxLayout):
    """One medication with its Skip Dose control."""
    skipped = BooleanProperty(False)
    text = StringProperty("")

    def __init__(self, control: SkipDoseControl, spawn, **kwargs):
        super().__init__(orientation="horizontal", size_hint_y=None, height=dp(52),
                         padding=(dp(10), 0), spacing=dp(8), **kwargs)
        self.control = control
        self._spawn = spawn
        self.text = control.label
        self.add_widget(MDLabel(text=self.text))
        self._action = MDRaisedButton(text="Skip Dose", md_bg_color=(0.9, 0.2, 0.2, 1),
                                      on_release=lambda *_: self._spawn(self.skip()))
        self.add_widget(self._action)

    async def skip(self):
        if await self.control.skip():
            self.skipped = True
            self.remove_widget(self._action)
            self.add_widget(MDLabel(text="Skipped", bold=True, theme_text_color="Custom",
                                    text_color=(0.95, 0.3, 0.3, 1), size_hint_x=None, width=dp(96)))
        else:
            MDApp.get_running_app().alert("Error", self.control.error)

# -------------------------
# KV
# -------------------------
KV = """
<BackgroundGradient>:
    size_hint: 1, 1

<GlassCard>:
    size_hint: 1, None

<ColorDot>:
    size_hint: None, None
    size: "28dp", "28dp"

ScreenManager:

    MDScreen:
        name: "splash"
        BackgroundGradient:
        MDLabel:
            id: splash_title
            text: "MedRemind"
            halign: "center"
            font_style: "H3"
            bold: True
            opacity: 0

    MDScreen:
        name: "auth"
        BackgroundGradient:
        MDBoxLayout:
            orientation: "vertical"
            padding: "24dp"
            spacing: "14dp"

            Widget:
            MDLabel:
                text: "MedRemind"
                halign: "center"
                font_style: "H4"
                bold: True
                size_hint_y: None
                height: "56dp"
            MDLabel:
                text: "Your Personal Medication Reminder"
                halign: "center"
                theme_text_color: "Secondary"
                size_hint_y: None
                height: "28dp"

            FloatLayout:
                size_hint_y: None
                height: "240dp"
                GlassCard:
                    pos: self.parent.pos
                    size: self.parent.size
                MDBoxLayout:
                    orientation: "vertical"
                    padding: "16dp"
                    spacing: "10dp"
                    pos: self.parent.pos
                    size: self.parent.size

                    MDLabel:
                        id: auth_welcome
                        text: "Welcome Back!"
                        bold: True
                        font_style: "H6"
                        halign: "center"
                    MDLabel:
                        id: auth_instruction
                        text: ""
                        halign: "center"
                        theme_text_color: "Secondary"
                    MDTextField:
                        id: auth_pin
                        hint_text: "PIN"
                        password: True
                        input_filter: "int"
                        max_text_length: 8
                    MDRaisedButton:
                        id: auth_button
                        text: "Authenticate"
                        pos_hint: {"center_x": 0.5}
                        on_release: app.authenticate()
                    MDLabel:
                        id: auth_error
                        text: ""
                        halign: "center"
                        theme_text_color: "Error"
            Widget:

    MDScreen:
        name: "main"
        MDBoxLayout:
            orientation: "vertical"

            MDTopAppBar:
                title: "MedRemind"
                elevation: 4
                right_action_items: [["refresh", lambda x: app.refresh_all()]]

            ScreenManager:
                id: screen_manager

                MDScreen:
                    name: "home"
                    BackgroundGradient:
                    MDBoxLayout:
                        orientation: "vertical"
                        padding: "12dp"
                        spacing: "12dp"

                        FloatLayout:
                            size_hint_y: None
                            height: "96dp"
                            GlassCard:
                                pos: self.parent.pos
                                size: self.parent.size
                            MDBoxLayout:
                                orientation: "vertical"
                                padding: "14dp"
                                pos: self.parent.pos
                                size: self.parent.size
                                MDLabel:
                                    text: "Today"
                                    bold: True
                                    font_style: "H6"
                                MDLabel:
                                    id: today_count
                                    text: "-"
                                    theme_text_color: "Secondary"

                        MDLabel:
                            text: "Upcoming doses (tap to log)"
                            bold: True
                            size_hint_y: None
                            height: "28dp"

                        ScrollView:
                            MDList:
                                id: upcoming_list

                MDScreen:
                    name: "medications"
                    BackgroundGradient:
                    MDBoxLayout:
                        orientation: "vertical"
                        padding: "12dp"
                        spacing: "12dp"

                        FloatLayout:
                            size_hint_y: None
                            height: "84dp"
                            GlassCard:
                                pos: self.parent.pos
                                size: self.parent.size
                            MDBoxLayout:
                                orientation: "vertical"
                                padding: "14dp"
                                pos: self.parent.pos
                                size: self.parent.size
                                MDLabel:
                                    text: "Medications"
                                    bold: True
                                    font_style: "H6"
                                MDLabel:
                                    id: med_count
                                    text: "-"
                                    theme_text_color: "Secondary"

                        ScrollView:
                            MDList:
                                id: medications_list

                        MDRaisedButton:
                            text: "Add Medication"
                            size_hint_y: None
                            height: "48dp"
                            on_release: app.show_add_dialog()

                MDScreen:
                    name: "history"
                    BackgroundGradient:
                    MDBoxLayout:
                        orientation: "vertical"
                        padding: "12dp"
                        spacing: "10dp"

                        FloatLayout:
                            size_hint_y: None
                            height: "84dp"
                            GlassCard:
                                pos: self.parent.pos
                                size: self.parent.size
                            MDBoxLayout:
                                orientation: "vertical"
                                padding: "14dp"
                                pos: self.parent.pos
                                size: self.parent.size
                                MDLabel:
                                    text: "History Log"
                                    bold: True
                                    font_style: "H6"
                                MDLabel:
                                    id: hist_count
                                    text: "-"
                                    theme_text_color: "Secondary"

                        MDBoxLayout:
                            size_hint_y: None
                            height: "44dp"
                            spacing: "8dp"
                            MDRaisedButton:
                                id: filter_all
                                text: "All"
                                on_release: app.set_history_filter("all")
                            MDFlatButton:
                                id: filter_taken
                                text: "Taken"
                                on_release: app.set_history_filter("taken")
                            MDFlatButton:
                                id: filter_missed
                                text: "Missed"
                                on_release: app.set_history_filter("missed")

                        ScrollView:
                            MDBoxLayout:
                                id: history_list
                                orientation: "vertical"
                                size_hint_y: None
                                height: self.minimum_height
                                spacing: "4dp"

                        MDRaisedButton:
                            text: "Clear All Data"
                            md_bg_color: 0.9, 0.2, 0.2, 1
                            size_hint_y: None
                            height: "48dp"
                            on_release: app.confirm_clear_all()

                MDScreen:
                    name: "settings"
                    BackgroundGradient:
                    MDBoxLayout:
                        orientation: "vertical"
                        padding: "12dp"
                        spacing: "12dp"

                        MDLabel:
                            id: db_status
                            text: "-"
                            theme_text_color: "Secondary"
                            size_hint_y: None
                            height: "48dp"

                        ScrollView:
                            MDLabel:
                                id: debug_log
                                text: ""
                                size_hint_y: None
                                height: self.texture_size[1]

                        MDBoxLayout:
                            spacing: "10dp"
                            size_hint_y: None
                            height: "48dp"
                            MDRaisedButton:
                                text: "Refresh Log"
                                on_release: app.refresh_log()
                            MDRaisedButton:
                                text: "Clear Log"
                                on_release: app.clear_log()

            MDBottomNavigation:
                panel_color: 0.05, 0.12, 0.07, 1
                MDBottomNavigationItem:
                    name: "nav_home"
                    text: "Home"
                    icon: "home"
                    on_tab_press: app.switch_screen("home")
                MDBottomNavigationItem:
                    name: "nav_medications"
                    text: "Medications"
                    icon: "pill"
                    on_tab_press: app.switch_screen("medications")
                MDBottomNavigationItem:
                    name: "nav_history"
                    text: "History"
                    icon: "history"
                    on_tab_press: app.switch_screen("history")
                MDBottomNavigationItem:
                    name: "nav_settings"
                    text: "Settings"
                    icon: "cog"
                    on_tab_press: app.switch_screen("settings")
"""

# -------------------------
# App
# -------------------------
class MedRemindApp(MDApp):
    def __init__(self, storage: Optional[MedStorage] = None, auth: Optional[Authenticator] = None, **kwargs):
        super().__init__(**kwargs)
        self.storage = storage
        self.auth = auth or Authenticator()
        self.history_view = HistoryView()
        self._tasks = set()
        self._authenticating = False
        self._add_dialog: Optional[MDDialog] = None

    def build(self):
        self.title = medconfig.APP_NAME
        self.theme_cls.theme_style = "Dark"
        self.theme_cls.primary_palette = "Green"
        return Builder.load_string(KV)

    def spawn(self, coro):
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task):
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("background task failed", exc_info=task.exception())

    def on_start(self):
        logger.info(f"app start platform={_kivy_platform} base={medconfig.BASE_DIR}")
        if self.storage is None:
            self.storage = MedStorage.open()
        # key exists now, so the service can read the store
        start_reminder_service()
        self.root.current = "splash"
        title = self.root.ids.splash_title
        Animation(opacity=1, duration=1.0, t="out_quad").start(title)
        Clock.schedule_once(lambda *_: self.show_auth(), medconfig.SPLASH_SECONDS)

    def on_stop(self):
        for t in list(self._tasks):
            t.cancel()

    # -------------------------
    # Auth
    # -------------------------
    def show_auth(self):
        ids = self.root.ids
        if self.auth.has_pin():
            ids.auth_welcome.text = "Welcome Back!"
            ids.auth_instruction.text = self.auth.prompt_message()
            ids.auth_button.text = "Authenticate" if self.auth.has_biometrics() else "Enter PIN"
        else:
            ids.auth_welcome.text = "Create a PIN"
            ids.auth_instruction.text = (f"Choose a {medconfig.PIN_MIN_LEN}-{medconfig.PIN_MAX_LEN}"
                                         " digit PIN to protect your medications")
            ids.auth_button.text = "Set PIN"
        ids.auth_error.text = ""
        self.root.current = "auth"

    def authenticate(self):
        if self._authenticating:
            return
        self.spawn(self._authenticate())

    async def _authenticate(self):
        ids = self.root.ids
        pin = ids.auth_pin.text.strip()
        label = ids.auth_button.text
        self._authenticating = True
        ids.auth_button.disabled = True
        ids.auth_button.text = "Verifying..."
        ids.auth_error.text = ""
        try:
            if not self.auth.has_pin():
                if not valid_pin(pin):
                    ids.auth_error.text = f"PIN must be {medconfig.PIN_MIN_LEN}-{medconfig.PIN_MAX_LEN} digits"
                    return
                await asyncio.to_thread(self.auth.set_pin, pin)
                self.enter_app()
                return
            result = await asyncio.to_thread(self.auth.verify_pin, pin)
            if result.success:
                self.enter_app()
            else:
                ids.auth_error.text = result.error or ""
        except Exception:
            logger.exception("authentication failed")
            ids.auth_error.text = "Authentication error"
        finally:
            self._authenticating = False
            ids.auth_button.disabled = False
            ids.auth_button.text = label
            ids.auth_pin.text = ""

    def enter_app(self):
        self.root.current = "main"
        self.switch_screen("home")
        self.refresh_log(silent=True)

    # -------------------------
    # Navigation
    # -------------------------
    def switch_screen(self, name: str):
        self.root.ids.screen_manager.current = name
        if name == "home":
            self.spawn(self.refresh_home())
        elif name == "medications":
            self.spawn(self.refresh_medications())
        elif name == "history":
            self.spawn(self.refresh_history())
        elif name == "settings":
            self.refresh_log()

    def refresh_all(self):
        self.spawn(self.refresh_home())
        self.spawn(self.refresh_medications())
        self.spawn(self.refresh_history())
        self.refresh_log(silent=True)

    # -------------------------
    # Home
    # -------------------------
    async def refresh_home(self):
        try:
            meds = await self.storage.get_medications()
            today = await self.storage.get_todays_doses()
        except Exception:
            logger.exception("refresh_home failed")
            return
        upcoming = upcoming_doses(meds, hours=medconfig.UPCOMING_HOURS)
        ul = self.root.ids.upcoming_list
        ul.clear_widgets()
        for u in upcoming:
            item = TwoLineIconListItem(text=f"{u['name']}  •  {u['dosage']}".strip(), secondary_text=u["time"])
            item.add_widget(IconLeftWidget(icon="clock-outline"))
            item.bind(on_release=lambda _, u=u: self.show_log_dose_dialog(u))
            ul.add_widget(item)
        taken = sum(1 for d in today if d.taken)
        self.root.ids.today_count.text = f"{taken}/{len(today)} logged doses taken  •  {len(upcoming)} upcoming"

    def show_log_dose_dialog(self, u: Dict):
        def log(taken: bool):
            dialog.dismiss()
            self.spawn(self._log_dose(u["medication_id"], taken))

        dialog = MDDialog(
            title="Log dose",
            text=f"{u['name']} • {u['dosage']}\nScheduled: {u['time']}".strip(),
            buttons=[
                MDFlatButton(text="Missed", on_release=lambda *_: log(False)),
                MDRaisedButton(text="Taken", on_release=lambda *_: log(True)),
            ],
        )
        dialog.open()

    async def _log_dose(self, med_id: str, taken: bool):
        try:
            await self.storage.record_dose(med_id, taken)
        except Exception:
            logger.exception("record dose failed")
            self.alert("Error", "Failed to record dose. Please try again.")
            return
        await self.refresh_home()

    # -------------------------
    # Medications + skip
    # -------------------------
    async def refresh_medications(self):
        try:
            meds = await self.storage.get_medications()
        except Exception:
            logger.exception("refresh_medications failed")
            return
        ml = self.root.ids.medications_list
        ml.clear_widgets()
        meds.sort(key=lambda m: m.name.lower())
        for m in meds:
            for t in (m.times or [""]):
                ml.add_widget(MedicationRow(SkipDoseControl(self.storage, m.id, m.name, t), self.spawn))
            if needs_refill(m):
                ml.add_widget(OneLineListItem(text=f"Refill soon: {m.name} ({m.current_supply} left)"))
        self.root.ids.med_count.text = f"{len(meds)} medications"

    def show_add_dialog(self):
        content = MDBoxLayout(orientation="vertical", spacing="10dp", padding="10dp", size_hint_y=None)
        content.bind(minimum_height=content.setter("height"))

        name = MDTextField(hint_text="Medication name", helper_text="Required", helper_text_mode="on_error")
        dosage = MDTextField(hint_text="Dosage (e.g., 2 tablets)")
        times = MDTextField(hint_text="Times (e.g., 08:00, 20:00)", text="09:00")
        color = MDTextField(hint_text="Color (#RRGGBB)", text="#4CAF50")
        supply = MDTextField(hint_text="Current supply", input_filter="int", text="0")
        for w in (name, dosage, times, color, supply):
            content.add_widget(w)

        def save(*_):
            if not name.text.strip():
                name.error = True
                return
            med = Medication(
                id="",
                name=name.text.strip(),
                dosage=dosage.text.strip(),
                color=color.text.strip(),
                times=[t.strip() for t in times.text.split(",") if t.strip()],
                start_date=datetime.now().date().isoformat(),
                current_supply=_to_int(supply.text),
                total_supply=_to_int(supply.text),
            )
            self._add_dialog.dismiss()
            self.spawn(self._add_medication(med))

        self._add_dialog = MDDialog(
            title="Add medication",
            type="custom",
            content_cls=content,
            buttons=[
                MDFlatButton(text="Cancel", on_release=lambda *_: self._add_dialog.dismiss()),
                MDRaisedButton(text="Save", on_release=save),
            ],
        )
        self._add_dialog.open()

    async def _add_medication(self, med: Medication):
        try:
            await self.storage.add_medication(med)
        except Exception:
            logger.exception("add medication failed")
            self.alert("Error", "Failed to save medication. Please try again.")
            return
        await self.refresh_medications()
        await self.refresh_home()

    # -------------------------
    # History
    # -------------------------
    def set_history_filter(self, mode: str):
        self.history_view.set_filter(mode)
        for key in ("all", "taken", "missed"):
            btn = self.root.ids[f"filter_{key}"]
            btn.md_bg_color = (0.10, 0.56, 0.18, 1) if key == self.history_view.mode.value else (0, 0, 0, 0)
        self.render_history()

    async def refresh_history(self):
        await self.history_view.refresh(self.storage)
        if self.root.ids.screen_manager.current != "history":
            return
        self.render_history()

    def render_history(self):
        hl = self.root.ids.history_list
        hl.clear_widgets()
        groups = self.history_view.groups()
        for day, doses in groups:
            hl.add_widget(MDLabel(text=format_date_header(day), bold=True, size_hint_y=None, height=dp(32)))
            for e in doses:
                row = MDBoxLayout(orientation="horizontal", size_hint_y=None, height=dp(64), spacing=dp(8))
                row.add_widget(ColorDot(color=_hex_color(display_color(e))))
                item = TwoLineIconListItem(
                    text=f"{display_name(e)} {display_dosage(e)}".strip(),
                    secondary_text=f"{format_time(e)}  •  {status_label(e)}",
                )
                item.add_widget(IconLeftWidget(icon="check-circle" if e.taken else "close-circle"))
                row.add_widget(item)
                hl.add_widget(row)
        self.root.ids.hist_count.text = f"{sum(len(d) for _, d in groups)} entries  •  filter: {self.history_view.mode.value}"

    def confirm_clear_all(self):
        def do_clear(*_):
            dialog.dismiss()
            self.spawn(self._clear_all())

        dialog = MDDialog(
            title="Clear All Data",
            text="Are you sure you want to clear all medication data? This action cannot be undone.",
            buttons=[
                MDFlatButton(text="Cancel", on_release=lambda *_: dialog.dismiss()),
                MDRaisedButton(text="Clear All", md_bg_color=(0.9, 0.2, 0.2, 1), on_release=do_clear),
            ],
        )
        dialog.open()

    async def _clear_all(self):
        ok, message = await self.history_view.clear_all(self.storage)
        self.render_history()
        self.alert("Success" if ok else "Error", message)
        if ok:
            await self.refresh_home()
            await self.refresh_medications()

    # -------------------------
    # Settings / log
    # -------------------------
    def refresh_log(self, silent: bool = False):
        try:
            if not silent:
                logger.info("log refreshed")
            self.root.ids.debug_log.text = RING.text()
            path = medconfig.STORE_PATH
            if path.exists():
                kb = path.stat().st_size / 1024.0
                self.root.ids.db_status.text = f"Encrypted store: {kb:.1f} KB  •  Base: {medconfig.BASE_DIR}"
            else:
                self.root.ids.db_status.text = f"No store yet  •  Base: {medconfig.BASE_DIR}"
        except Exception:
            logger.exception("refresh_log failed")

    def clear_log(self):
        clear_log()
        self.root.ids.debug_log.text = ""
        logger.info("log cleared")

    def alert(self, title: str, text: str):
        dialog = MDDialog(title=title, text=text,
                          buttons=[MDFlatButton(text="OK", on_release=lambda *_: dialog.dismiss())])
        dialog.open()

# -------------------------
# Entrypoint
# -------------------------
def main():
    asyncio.run(MedRemindApp().async_run(async_lib="asyncio"))

if __name__ == "__main__":
    main()
