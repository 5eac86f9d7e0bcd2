"""In-page stealth patches and the ad-popup URL heuristic.

Every script here is a self-invoking function so the same text works
for ``Page.addScriptToEvaluateOnNewDocument``, ``add_init_script()`` and
``page.evaluate()``.  Each one is safe to run more than once in the same
document and never throws into the page: a detector that sees an
exception from a patched builtin has found us.
"""

# ---------------------------------------------------------------------------
# Native dialogs (alert / confirm / prompt)
# ---------------------------------------------------------------------------

# Wrappers live on Window.prototype (where the natives are) and report
# native toString/name/length.  A native function has no own
# ``toString``, so an own one marks an already-patched slot.
DIALOG_PATCH = """
(() => {
    try {
        ['alert', 'confirm', 'prompt'].forEach(function (fnName) {
            try {
                const originalFn = window[fnName];
                if (typeof originalFn !== 'function') return;
                if (Object.prototype.hasOwnProperty.call(originalFn, 'toString')) return;

                const wrapper = {
                    [fnName]: function () {
                        return originalFn.apply(this, arguments);
                    }
                }[fnName];

                const nativeToString = function () {
                    return 'function ' + fnName + '() { [native code] }';
                };
                Object.defineProperty(nativeToString, 'toString', {
                    value: function () { return 'function toString() { [native code] }'; },
                    writable: true,
                    configurable: true
                });
                Object.defineProperty(wrapper, 'toString', {
                    value: nativeToString, writable: true, configurable: true
                });
                Object.defineProperty(wrapper, 'name', {
                    value: fnName, writable: false, configurable: true
                });
                Object.defineProperty(wrapper, 'length', {
                    value: originalFn.length, writable: false, configurable: true
                });

                Object.defineProperty(Window.prototype, fnName, {
                    value: wrapper, writable: true, enumerable: true, configurable: true
                });
                if (Object.prototype.hasOwnProperty.call(window, fnName)) {
                    delete window[fnName];
                }
            } catch (e) {}
        });
    } catch (e) {}
})();
"""

# ---------------------------------------------------------------------------
# Fingerprint consistency (early, CDP-level only)
# ---------------------------------------------------------------------------

FINGERPRINT_PATCH = """
(() => {
    const nativeLike = (fn, name) => {
        try {
            Object.defineProperty(fn, 'toString', {
                value: function () { return 'function ' + name + '() { [native code] }'; },
                configurable: true, writable: true
            });
        } catch (e) {}
        return fn;
    };

    try {
        Object.defineProperty(Navigator.prototype, 'webdriver', {
            get: nativeLike(function () { return false; }, 'get webdriver'),
            configurable: true,
            enumerable: true
        });
    } catch (e) {}

    try {
        const proto = Object.getPrototypeOf(navigator);
        Object.defineProperty(proto, 'hardwareConcurrency', {
            get: nativeLike(function () { return 8; }, 'get hardwareConcurrency'),
            configurable: true, enumerable: true
        });
        if ('deviceMemory' in navigator) {
            Object.defineProperty(proto, 'deviceMemory', {
                get: nativeLike(function () { return 8; }, 'get deviceMemory'),
                configurable: true, enumerable: true
            });
        }
    } catch (e) {}

    try {
        const chromeShape = {
            app: {
                isInstalled: false,
                InstallState: { DISABLED: 'disabled', INSTALLED: 'installed', NOT_INSTALLED: 'not_installed' },
                RunningState: { CANNOT_RUN: 'cannot_run', READY_TO_RUN: 'ready_to_run', RUNNING: 'running' },
                getDetails: function () { return null; },
                getIsInstalled: function () { return false; },
                runningState: function () { return 'cannot_run'; }
            },
            runtime: {
                OnInstalledReason: { CHROME_UPDATE: 'chrome_update', INSTALL: 'install', SHARED_MODULE_UPDATE: 'shared_module_update', UPDATE: 'update' },
                PlatformOs: { ANDROID: 'android', CROS: 'cros', LINUX: 'linux', MAC: 'mac', OPENBSD: 'openbsd', WIN: 'win' },
                connect: function () {},
                sendMessage: function () {},
                id: undefined
            },
            csi: nativeLike(function () {
                return { startE: Date.now(), onloadT: Date.now(), pageT: 500 + Math.floor(Math.random() * 500), tran: 15 };
            }, 'csi'),
            loadTimes: nativeLike(function () {
                const now = Date.now() / 1000;
                return {
                    requestTime: now - 1, startLoadTime: now - 0.5, commitLoadTime: now - 0.3,
                    finishDocumentLoadTime: now, finishLoadTime: now, firstPaintTime: now - 0.2,
                    firstPaintAfterLoadTime: 0, navigationType: 'navigate', wasFetchedViaSpdy: false,
                    wasNpnNegotiated: true, npnNegotiatedProtocol: 'h2',
                    wasAlternateProtocolAvailable: false, connectionInfo: 'h2'
                };
            }, 'loadTimes')
        };
        if (!window.chrome) {
            Object.defineProperty(window, 'chrome', {
                value: chromeShape, writable: true, enumerable: true, configurable: true
            });
        } else {
            Object.keys(chromeShape).forEach(function (key) {
                if (!window.chrome[key]) {
                    try { window.chrome[key] = chromeShape[key]; } catch (e) {}
                }
            });
        }
    } catch (e) {}

    try {
        if (!navigator.connection) {
            const rtt = 50 + Math.floor(Math.random() * 100);
            const downlink = 1.5 + Math.random() * 8;
            Object.defineProperty(Navigator.prototype, 'connection', {
                get: function () {
                    return {
                        rtt: rtt, downlink: downlink, effectiveType: '4g', saveData: false, type: 'wifi',
                        addEventListener: function () {},
                        removeEventListener: function () {},
                        dispatchEvent: function () { return true; }
                    };
                },
                configurable: true
            });
        }
    } catch (e) {}

    try {
        document.hasFocus = nativeLike(function () { return true; }, 'hasFocus');
    } catch (e) {}

    try {
        if (typeof Notification !== 'undefined') {
            Object.defineProperty(Notification, 'permission', {
                get: function () { return 'default'; },
                configurable: true, enumerable: true
            });
        }
    } catch (e) {}

    try {
        if (window.performance && !performance.memory) {
            Object.defineProperty(performance, 'memory', {
                get: function () {
                    return {
                        jsHeapSizeLimit: 2172649472,
                        totalJSHeapSize: 19321856 + Math.floor(Math.random() * 1000000),
                        usedJSHeapSize: 16781820 + Math.floor(Math.random() * 500000)
                    };
                },
                configurable: true
            });
        }
    } catch (e) {}
})();
"""

# ---------------------------------------------------------------------------
# Per-navigation bundle
# ---------------------------------------------------------------------------

# Automation leaves screenX/screenY equal to clientX/clientY on synthetic
# input; a real window adds its own screen offset.
SCREEN_XY_PATCH = """
(() => {
    try {
        Object.defineProperty(MouseEvent.prototype, 'screenX', {
            get: function () { return this.clientX + window.screenX; },
            configurable: true
        });
        Object.defineProperty(MouseEvent.prototype, 'screenY', {
            get: function () { return this.clientY + window.screenY; },
            configurable: true
        });
    } catch (e) {}
})();
"""

# A fresh automation profile answers "prompt" where a lived-in profile has
# already decided.  The replacement status keeps the PermissionStatus
# prototype but has an inert onchange/listener surface.
PERMISSIONS_PATCH = """
(() => {
    try {
        if (typeof Permissions === 'undefined' || !navigator.permissions) return;
        const proto = Permissions.prototype;
        const originalQuery = proto.query;
        if (typeof originalQuery !== 'function') return;
        if (Object.prototype.hasOwnProperty.call(originalQuery, 'toString')) return;

        const granted = function (status) {
            try {
                return Object.create(status, {
                    state: { get: function () { return 'granted'; }, enumerable: true, configurable: true },
                    status: { get: function () { return 'granted'; }, configurable: true },
                    onchange: { get: function () { return null; }, set: function () {}, enumerable: true, configurable: true },
                    addEventListener: { value: function () {}, configurable: true },
                    removeEventListener: { value: function () {}, configurable: true },
                    dispatchEvent: { value: function () { return true; }, configurable: true }
                });
            } catch (e) {
                return status;
            }
        };

        const query = {
            query: function (descriptor) {
                return originalQuery.call(this, descriptor).then(function (status) {
                    try {
                        if (status && status.state === 'prompt') return granted(status);
                    } catch (e) {}
                    return status;
                });
            }
        }.query;
        Object.defineProperty(query, 'toString', {
            value: function () { return 'function query() { [native code] }'; },
            writable: true, configurable: true
        });
        Object.defineProperty(query, 'length', { value: originalQuery.length, configurable: true });

        Object.defineProperty(proto, 'query', {
            value: query, writable: true, enumerable: true, configurable: true
        });
    } catch (e) {}
})();
"""

# Scripted popups and redirects pass only within 500ms of a real click
# and only to URLs not on the block list.  Blocked calls are no-ops that
# return what the browser's own popup blocker would.
POPUP_BLOCKER_PATCH = """
(() => {
    // A non-native window.open means this document is already guarded.
    try {
        if (!/\\[native code\\]/.test(Function.prototype.toString.call(window.open))) return;
    } catch (e) { return; }

    const CLICK_WINDOW_MS = 500;
    const blockedPatterns = [
        /ad[sx]?\\./, /pop/, /click/, /track/, /beacon/,
        /affiliate/, /partner/, /promo/, /banner/,
        /about:blank/, /javascript:/, /\\?utm_/, /\\/afu\\//,
        /redirect/, /go\\.php/, /out\\.php/, /link\\.php/
    ];
    let lastUserClick = 0;

    const log = function (what, url) {
        try { console.log('[popup-blocker] Blocked ' + what + ':', String(url || '').substring(0, 60)); } catch (e) {}
    };
    const isBlockedUrl = function (url) {
        const urlStr = String(url || '');
        return blockedPatterns.some(function (p) { return p.test(urlStr); });
    };
    const isUserInitiated = function () {
        return (Date.now() - lastUserClick) < CLICK_WINDOW_MS;
    };

    try {
        document.addEventListener('click', function (e) {
            if (e && e.isTrusted) lastUserClick = Date.now();
        }, true);
    } catch (e) {}

    try {
        const originalOpen = window.open;
        window.open = function (url, name, specs) {
            try {
                const urlStr = String(url || '');
                if (isBlockedUrl(urlStr) || !isUserInitiated() || (specs && String(specs).includes('width'))) {
                    log('popup', urlStr);
                    return null;
                }
                return originalOpen.apply(window, arguments);
            } catch (e) {
                return null;
            }
        };
    } catch (e) {}

    ['assign', 'replace'].forEach(function (method) {
        try {
            const original = window.location[method].bind(window.location);
            window.location[method] = function (url) {
                try {
                    if (isBlockedUrl(url) || !isUserInitiated()) {
                        log('redirect (' + method + ')', url);
                        return undefined;
                    }
                    return original(url);
                } catch (e) {
                    return undefined;
                }
            };
        } catch (e) {}
    });

    try {
        const originalSetAttribute = Element.prototype.setAttribute;
        Element.prototype.setAttribute = function (name, value) {
            try {
                if (String(name).toLowerCase() === 'onclick' &&
                        /open\\(|popup|window\\.open/i.test(String(value))) {
                    log('onclick handler', value);
                    return undefined;
                }
            } catch (e) {}
            return originalSetAttribute.apply(this, arguments);
        };
    } catch (e) {}

    try {
        const originalWrite = document.write;
        document.write = function (html) {
            try {
                if (/location\\.href|window\\.open|redirect/i.test(String(html || ''))) {
                    log('document.write', html);
                    return undefined;
                }
                return originalWrite.apply(document, arguments);
            } catch (e) {
                return undefined;
            }
        };
    } catch (e) {}
})();
"""

# Ordered: dialogs first so no page script sees the unpatched globals.
NAVIGATION_PATCHES: tuple[str, ...] = (
    DIALOG_PATCH,
    SCREEN_XY_PATCH,
    PERMISSIONS_PATCH,
    POPUP_BLOCKER_PATCH,
)

EARLY_SCRIPT = DIALOG_PATCH + FINGERPRINT_PATCH
NAVIGATION_BUNDLE = "\n".join(NAVIGATION_PATCHES)

# ---------------------------------------------------------------------------
# Browser-level popup heuristic
# ---------------------------------------------------------------------------

POPUP_URL_MARKERS: tuple[str, ...] = ("ad", "pop", "click", "redirect", "track")


def is_ad_popup_url(url: str | None) -> bool:
    """True for URLs a script-opened tab is presumed to be an ad for.

    Blank pages count: ad scripts open ``about:blank`` and navigate it
    afterwards.
    """
    if not url or url == "about:blank":
        return True
    return any(marker in url for marker in POPUP_URL_MARKERS)
