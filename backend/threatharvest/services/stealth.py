"""Page-init anti-detection overrides.

The override set is plain data: `build_overrides(profile)` returns a list of
small objects, each of which renders its own JavaScript snippet.
`render_init_script()` joins them into the script the browser driver installs
with `context.add_init_script`. Tests inspect the list without a browser.
"""

import json
import random
from dataclasses import dataclass, field
from typing import Any

from threatharvest.schemas.scrape import BrowserProfile

AUTOMATION_GLOBALS = [
    "domAutomation",
    "domAutomationController",
    "_selenium",
    "_Selenium_IDE_Recorder",
    "__webdriver_script_fn",
    "__driver_evaluate",
    "__webdriver_evaluate",
    "__fxdriver_evaluate",
    "__driver_unwrapped",
    "__webdriver_unwrapped",
    "__selenium_unwrapped",
    "callSelenium",
    "_phantom",
    "__nightmare",
    "cdc_adoQpoasnfa76pfcZLmcfl_Array",
    "cdc_adoQpoasnfa76pfcZLmcfl_Promise",
    "cdc_adoQpoasnfa76pfcZLmcfl_Symbol",
]

CHROME_PLUGINS = [
    ("Chrome PDF Plugin", "Portable Document Format", "internal-pdf-viewer"),
    ("Chrome PDF Viewer", "", "mhjfbmdgcfjbbpaeojofohoefgiehjai"),
    ("Native Client", "", "internal-nacl-plugin"),
]

UNMASKED_VENDOR_WEBGL = 37445
UNMASKED_RENDERER_WEBGL = 37446


class Override:
    name = "override"

    def render(self) -> str:
        raise NotImplementedError


@dataclass(frozen=True)
class PropertyOverride(Override):
    """Replace `target.prop` with a getter returning a fixed JSON value."""

    target: str
    prop: str
    value: Any

    @property
    def name(self) -> str:
        return f"{self.target}.{self.prop}"

    def render(self) -> str:
        return (
            f"try {{ Object.defineProperty({self.target}, {json.dumps(self.prop)}, "
            f"{{ get: () => {json.dumps(self.value)}, configurable: true }}); }} catch (e) {{}}"
        )


@dataclass(frozen=True)
class HideGlobals(Override):
    names: tuple[str, ...]
    name = "automation_globals"

    def render(self) -> str:
        return (
            f"{json.dumps(list(self.names))}.forEach(p => {{"
            " try { delete window[p]; } catch (e) {}"
            " try { Object.defineProperty(window, p, { get: () => undefined }); } catch (e) {}"
            " });"
        )


@dataclass(frozen=True)
class PluginsOverride(Override):
    plugins: tuple[tuple[str, str, str], ...]
    name = "navigator.plugins"

    def render(self) -> str:
        return (
            "(function() {"
            f" const defs = {json.dumps([list(p) for p in self.plugins])};"
            " const plugins = defs.map(([name, description, filename]) => {"
            "  const p = Object.create(Plugin.prototype);"
            "  Object.defineProperties(p, { name: { value: name }, description: { value: description },"
            "   filename: { value: filename }, length: { value: 1 } });"
            "  return p; });"
            " Object.defineProperty(navigator, 'plugins', { get: () => {"
            "  const arr = Object.create(PluginArray.prototype);"
            "  plugins.forEach((p, i) => { arr[i] = p; });"
            "  Object.defineProperty(arr, 'length', { value: plugins.length });"
            "  arr.item = (i) => plugins[i];"
            "  arr.namedItem = (n) => plugins.find(p => p.name === n);"
            "  arr.refresh = () => {};"
            "  return arr; } });"
            "})();"
        )


@dataclass(frozen=True)
class ChromeRuntimeOverride(Override):
    name = "window.chrome"

    def render(self) -> str:
        return (
            "if (!window.chrome) { window.chrome = {}; }"
            " window.chrome.runtime = window.chrome.runtime || { connect: function() {},"
            " sendMessage: function() {}, id: undefined };"
            " window.chrome.loadTimes = window.chrome.loadTimes || function() {"
            " return { requestTime: Date.now() / 1000, navigationType: 'Other', connectionInfo: 'h2' }; };"
            " window.chrome.csi = window.chrome.csi || function() {"
            " return { onloadT: Date.now(), pageT: 1200, startE: Date.now(), tran: 15 }; };"
        )


@dataclass(frozen=True)
class WebGLOverride(Override):
    vendor: str
    renderer: str
    name = "webgl"

    def render(self) -> str:
        return (
            "(function() {"
            f" const params = {{ {UNMASKED_VENDOR_WEBGL}: {json.dumps(self.vendor)},"
            f" {UNMASKED_RENDERER_WEBGL}: {json.dumps(self.renderer)} }};"
            " const patch = (proto) => { if (!proto) return;"
            "  const orig = proto.getParameter;"
            "  proto.getParameter = function(param) {"
            "   if (param in params) return params[param];"
            "   return orig.call(this, param); }; };"
            " patch(window.WebGLRenderingContext && WebGLRenderingContext.prototype);"
            " patch(window.WebGL2RenderingContext && WebGL2RenderingContext.prototype);"
            "})();"
        )


@dataclass(frozen=True)
class CanvasNoiseOverride(Override):
    """Flip the low bit of a few pixels on every read, driven by a seeded LCG.

    Same seed, same noise: the canvas hash is stable within a session but
    differs between sessions.
    """

    seed: int
    rate: float = 0.1
    name = "canvas"

    def render(self) -> str:
        return (
            "(function() {"
            f" let s = {self.seed};"
            " const next = () => { s = (s * 1664525 + 1013904223) & 0xFFFFFFFF; return (s >>> 0) / 0xFFFFFFFF; };"
            " const noise = (canvas) => { try {"
            "  const ctx = canvas.getContext('2d'); if (!ctx || !canvas.width || !canvas.height) return;"
            "  const img = ctx.getImageData(0, 0, canvas.width, canvas.height);"
            "  for (let i = 0; i < Math.min(img.data.length, 400); i += 4) {"
            f"   if (next() < {self.rate}) img.data[i] = img.data[i] ^ 1; }}"
            "  ctx.putImageData(img, 0, 0); } catch (e) {} };"
            " const toDataURL = HTMLCanvasElement.prototype.toDataURL;"
            " HTMLCanvasElement.prototype.toDataURL = function() { noise(this); return toDataURL.apply(this, arguments); };"
            " const toBlob = HTMLCanvasElement.prototype.toBlob;"
            " HTMLCanvasElement.prototype.toBlob = function() { noise(this); return toBlob.apply(this, arguments); };"
            "})();"
        )


@dataclass
class OverrideSet:
    overrides: list[Override] = field(default_factory=list)

    def names(self) -> list[str]:
        return [o.name for o in self.overrides]

    def get(self, name: str) -> Override | None:
        for o in self.overrides:
            if o.name == name:
                return o
        return None


def _platform_for(user_agent: str) -> str:
    if "iPhone" in user_agent:
        return "iPhone"
    if "iPad" in user_agent:
        return "iPad"
    if "Win" in user_agent:
        return "Win32"
    if "Mac" in user_agent:
        return "MacIntel"
    return "Linux x86_64"


def build_overrides(profile: BrowserProfile, seed: int | None = None) -> OverrideSet:
    """Override list for one page session under `profile`."""
    if seed is None:
        seed = random.randint(1, 2**31 - 1)

    overrides: list[Override] = [
        PropertyOverride("navigator", "webdriver", False),
        PropertyOverride("navigator", "languages", [profile.locale, profile.locale.split("-")[0]]),
        PropertyOverride("navigator", "platform", _platform_for(profile.user_agent)),
        PropertyOverride("navigator", "hardwareConcurrency", profile.hardware_concurrency),
        PropertyOverride("navigator", "deviceMemory", profile.device_memory),
        PropertyOverride("navigator", "maxTouchPoints", 5 if profile.is_mobile else 0),
        PropertyOverride("screen", "colorDepth", profile.color_depth),
        PropertyOverride("screen", "pixelDepth", profile.color_depth),
        PropertyOverride("window", "devicePixelRatio", profile.pixel_ratio),
        HideGlobals(tuple(AUTOMATION_GLOBALS)),
        WebGLOverride(profile.webgl_vendor, profile.webgl_renderer),
        CanvasNoiseOverride(seed),
    ]
    if not profile.is_firefox and not profile.is_mobile:
        overrides.append(PluginsOverride(tuple(CHROME_PLUGINS)))
    if "Chrome/" in profile.user_agent:
        overrides.append(ChromeRuntimeOverride())
    return OverrideSet(overrides)


def render_init_script(override_set: OverrideSet) -> str:
    return "\n".join(o.render() for o in override_set.overrides)
