from __future__ import annotations

BRIDGE_SCRIPT_VERSION = 3
BRIDGE_GLOBAL = "__agentLink"


# NOTE: This script is self-contained and idempotent.
# It installs `globalThis.__agentLink` on the agent page with:
# - findInput(): locate the rich-text (Lexical) editor
# - focusInput(): focus the editor and move the caret to the end
# - getInputText(): current editor text
# - isSendVisible(): true while the Send control is rendered (agent idle)
# - clickSend(): click the Send control
# - getLastBotText(): {text, count} of rendered agent replies
# - getMessages(): [{type: "user"|"bot", text}]
# - checkError(): {hasError, errorText?} for the "Error ... try again" banner
# - diagnose(): candidate input elements with geometry
#
# Evaluating it again with the same version returns {injected: false} and keeps
# the existing object; any other version is replaced.
BRIDGE_SCRIPT_SOURCE = r"""
(() => {
  const VERSION = 3;
  const g = globalThis;

  if (g.__agentLink && g.__agentLink.__version === VERSION) {
    return JSON.stringify({ injected: false, reason: "already present", version: VERSION });
  }

  const EDITOR = '[contenteditable="true"][data-lexical-editor="true"]';
  const PANEL = ".antigravity-agent-side-panel";
  const BOT = '[class*="leading-relaxed"][class*="select-text"]';
  const USER = ".whitespace-pre-wrap";

  const visible = (el, minHeight) => {
    const rect = el.getBoundingClientRect();
    return rect.width > 0 && rect.height > (minHeight || 0);
  };

  const cleanText = (el) => {
    const clone = el.cloneNode(true);
    clone.querySelectorAll("style").forEach((s) => s.remove());
    return (clone.textContent || "").trim();
  };

  const sendButton = () => {
    const panel = document.querySelector(PANEL);
    if (!panel) return { panel: false, button: null };
    for (const btn of panel.querySelectorAll("button")) {
      const label = (btn.textContent || "").trim();
      if (label.indexOf("Send") !== -1 && visible(btn, 0)) return { panel: true, button: btn };
    }
    return { panel: true, button: null };
  };

  const botReplies = () => {
    const out = [];
    for (const el of document.querySelectorAll(BOT)) {
      if (visible(el, 10)) out.push(cleanText(el));
    }
    return out;
  };

  g.__agentLink = {
    __version: VERSION,

    findInput() {
      const el = document.querySelector(EDITOR);
      if (!el) return { found: false };
      const rect = el.getBoundingClientRect();
      return { found: true, w: Math.round(rect.width), h: Math.round(rect.height) };
    },

    focusInput() {
      const el = document.querySelector(EDITOR);
      if (!el) return { success: false, error: "editor not found" };
      el.focus();
      const sel = window.getSelection();
      const range = document.createRange();
      range.selectNodeContents(el);
      range.collapse(false);
      sel.removeAllRanges();
      sel.addRange(range);
      return { success: true, focused: document.activeElement === el };
    },

    getInputText() {
      const el = document.querySelector(EDITOR);
      return el ? el.textContent || "" : "";
    },

    isSendVisible() {
      return sendButton().button !== null;
    },

    clickSend() {
      const found = sendButton();
      if (!found.panel) return { success: false, error: "agent panel not found" };
      if (!found.button) return { success: false, error: "submit control not found" };
      found.button.click();
      return { success: true };
    },

    getLastBotText() {
      const replies = botReplies();
      return { text: replies.length ? replies[replies.length - 1] : "", count: replies.length };
    },

    getMessages() {
      const out = [];
      for (const el of document.querySelectorAll(USER)) {
        if (visible(el, 5)) out.push({ type: "user", text: el.textContent || "" });
      }
      for (const text of botReplies()) out.push({ type: "bot", text });
      return out;
    },

    checkError() {
      const conv = document.querySelector("#conversation");
      if (!conv) return { hasError: false };
      for (const div of conv.querySelectorAll("div")) {
        const t = (div.textContent || "").trim();
        if (t.length < 200 && t.indexOf("Error") !== -1 && t.indexOf("try again") !== -1) {
          return { hasError: true, errorText: t };
        }
      }
      return { hasError: false };
    },

    diagnose() {
      const out = [];
      const selectors = [EDITOR, '[contenteditable="true"]', "textarea"];
      for (const selector of selectors) {
        document.querySelectorAll(selector).forEach((el, index) => {
          const rect = el.getBoundingClientRect();
          out.push({
            selector,
            index,
            tag: el.tagName,
            visible: rect.width > 0 && rect.height > 0,
            lexical: !!el.getAttribute("data-lexical-editor"),
            w: Math.round(rect.width),
            h: Math.round(rect.height),
          });
        });
      }
      return out;
    },
  };

  return JSON.stringify({ injected: true, version: VERSION });
})()
"""

BRIDGE_PROBE_EXPRESSION = (
    "JSON.stringify({"
    f"present: !!globalThis.{BRIDGE_GLOBAL}, "
    f"version: (globalThis.{BRIDGE_GLOBAL} && globalThis.{BRIDGE_GLOBAL}.__version) || null"
    "})"
)


__all__ = ["BRIDGE_GLOBAL", "BRIDGE_PROBE_EXPRESSION", "BRIDGE_SCRIPT_SOURCE", "BRIDGE_SCRIPT_VERSION"]
