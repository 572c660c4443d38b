"""Built-in failure pattern catalog.

Patterns are matched in the order declared here and the first match wins,
so more specific patterns must precede more general ones (e.g. the
lockfile patterns come before the generic ``enoent``, and the catch-all
``exit_code_nonzero``/``process_killed`` come last).

Fix templates use ``{n}`` for the n-th captured group.
"""

from __future__ import annotations

from mender.patterns.models import FailureCategory as C
from mender.patterns.models import FailurePattern

_p = FailurePattern.build

# ─── Typed compilation ────────────────────────────────────────────────

_TYPESCRIPT = [
    _p("type_mismatch", r"Type '(.+)' is not assignable to type '(.+)'", C.TYPESCRIPT, [
        ("add_index_signature", 0.8, "Add index signature for {2}"),
        ("widen_to_any", 0.7, "Widen {1} to any (safe fallback)"),
        ("add_type_assertion", 0.6, "Assert as {2}"),
    ]),
    _p("ts_property_missing", r"Property '(.+)' does not exist on type '(.+)'", C.TYPESCRIPT, [
        ("add_to_interface", 0.85, "Add property '{1}' to interface {2}"),
        ("optional_chain", 0.8, "Use optional chaining for {1}"),
        ("cast_to_any", 0.5, "Cast {2} to any"),
    ]),
    _p("ts_argument_count", r"Expected (\d+) arguments?, but got (\d+)", C.TYPESCRIPT, [
        ("fix_arg_count", 0.9, "Fix argument count: expected {1}, got {2}"),
        ("add_optional_params", 0.7, "Make extra params optional"),
    ]),
    _p("ts_no_overload", r"No overload matches this call", C.TYPESCRIPT, [
        ("fix_overload_args", 0.8, "Fix function call to match an overload signature"),
        ("add_type_assertion", 0.6, "Add type assertion to satisfy overload"),
    ]),
    _p("ts_implicit_any",
       r"(?:Parameter|Variable|Element) '(.+)' implicitly has an? '(.+)' type", C.TYPESCRIPT, [
           ("add_explicit_type", 0.9, "Add explicit type annotation to {1}"),
           ("enable_no_implicit_any_false", 0.5, "Disable noImplicitAny in tsconfig"),
       ]),
    _p("ts_jsx_element",
       r"(?:JSX element|'(.+)') (?:type|class) does not have any construct or call signatures",
       C.TYPESCRIPT, [
           ("fix_component_type", 0.8, "Fix React component type signature"),
           ("add_react_fc_type", 0.7, "Type component as React.FC"),
       ]),
    _p("ts_cannot_use_jsx", r"Cannot use JSX unless the '(.+)' flag is provided", C.TYPESCRIPT, [
        ("set_jsx_flag", 0.95, 'Set jsx: "{1}" in tsconfig.json'),
    ]),
    _p("ts_duplicate_identifier", r"Duplicate identifier '(.+)'", C.TYPESCRIPT, [
        ("rename_duplicate", 0.8, "Rename duplicate identifier {1}"),
        ("merge_declarations", 0.6, "Merge duplicate declarations of {1}"),
    ]),
    _p("ts_missing_return", r"Not all code paths return a value", C.TYPESCRIPT, [
        ("add_return_statement", 0.9, "Add missing return statement"),
        ("add_void_return_type", 0.6, "Change return type to include void"),
    ]),
    _p("ts_object_possibly_null", r"Object is possibly '(null|undefined)'", C.TYPESCRIPT, [
        ("add_null_check", 0.9, "Add null check (object possibly {1})"),
        ("add_non_null_assertion", 0.7, "Add non-null assertion operator"),
        ("add_optional_chain", 0.85, "Use optional chaining operator"),
    ]),
]

# ─── Imports and references ───────────────────────────────────────────

_IMPORTS = [
    _p("missing_import", r"Cannot find module '(.+)'", C.IMPORT, [
        ("install_package", 0.9, "Install missing package: {1}"),
        ("fix_relative_path", 0.8, "Fix relative path for {1}"),
    ]),
    _p("module_not_found", r"Module not found: Can't resolve '(.+)'", C.MODULE, [
        ("install_missing", 0.9, "Install missing module: {1}"),
        ("fix_alias_config", 0.7, "Fix path alias for {1} in tsconfig/webpack"),
    ]),
    _p("err_module_not_found", r"ERR_MODULE_NOT_FOUND.*'(.+)'", C.IMPORT, [
        ("fix_esm_extension", 0.9, "Add .js extension for ESM import {1}"),
        ("install_package", 0.8, "Install {1}"),
    ]),
    _p("err_require_esm", r"ERR_REQUIRE_ESM.*require\(\) of ES Module (.+)", C.IMPORT, [
        ("convert_to_dynamic_import", 0.9, "Convert require() to dynamic import() for {1}"),
        ("add_type_module", 0.7, 'Add "type": "module" to package.json'),
    ]),
    _p("esm_named_export", r"does not provide an export named '(.+)'", C.IMPORT, [
        ("use_default_import", 0.85, "Use default import instead of named export {1}"),
        ("check_export_name", 0.7, "Verify export name {1} exists in source"),
    ]),
    _p("undefined_reference", r"(?:Cannot find name|is not defined) '(.+)'", C.REFERENCE, [
        ("add_import", 0.8, "Add import for {1}"),
        ("declare_variable", 0.5, "Auto-declare {1}"),
    ]),
    _p("reference_error_runtime", r"ReferenceError: (.+) is not defined", C.REFERENCE, [
        ("add_import_or_require", 0.85, "Add import/require for {1}"),
        ("add_polyfill", 0.6, "Add polyfill for {1}"),
    ]),
]

# ─── Lint ─────────────────────────────────────────────────────────────

_LINT = [
    _p("unused_variable",
       r"'(.+)' is (?:defined|assigned|declared) but (?:never used|its value is never read)",
       C.LINT, [
           ("prefix_underscore", 0.95, "Prefix {1} with underscore"),
           ("remove_import", 0.9, "Remove unused import {1}"),
       ]),
    _p("eslint_parsing_error", r"Parsing error: (.+)", C.ESLINT, [
        ("fix_syntax", 0.8, "Fix syntax error: {1}"),
        ("update_parser_config", 0.6, "Update ESLint parser configuration"),
    ]),
    _p("eslint_rule_violation", r"eslint\((.+)\): (.+)", C.ESLINT, [
        ("fix_violation", 0.7, "Fix ESLint rule {1}: {2}"),
        ("eslint_disable_line", 0.5, "Disable eslint rule {1} for this line"),
    ]),
    _p("no_undef_eslint", r"'(.+)' is not defined\s*(?:no-undef)", C.ESLINT, [
        ("add_global_declaration", 0.8, "Declare {1} as global in ESLint config"),
        ("add_import", 0.85, "Import {1}"),
    ]),
]

# ─── UI framework ─────────────────────────────────────────────────────

_UI = [
    _p("react_hook_deps", r"React Hook (.+) has (?:a missing|missing) dependenc", C.REACT, [
        ("add_deps", 0.85, "Add missing dependencies to {1}"),
        ("add_eslint_disable", 0.7, "Add eslint-disable for {1}"),
    ]),
    _p("react_hook_rules", r'React Hook "(.+)" (?:is called conditionally|cannot be called)', C.REACT, [
        ("move_hook_to_top", 0.9, "Move {1} to top level of component"),
        ("extract_component", 0.7, "Extract conditional logic to sub-component"),
    ]),
    _p("react_invalid_hook_call", r"Invalid hook call.*Hooks can only be called inside", C.REACT, [
        ("move_to_component", 0.9, "Move hook call inside a React function component"),
        ("check_react_versions", 0.7, "Check for mismatched React versions"),
    ]),
    _p("react_hydration_mismatch",
       r"(?:Hydration failed|Text content does not match|There was an error while hydrating)",
       C.REACT, [
           ("add_use_client", 0.8, "Add 'use client' directive for client-only content"),
           ("wrap_in_suspense", 0.7, "Wrap dynamic content in Suspense boundary"),
           ("suppress_hydration_warning", 0.5, "Add suppressHydrationWarning prop"),
       ]),
    _p("react_server_component_error",
       r"""(?:You're importing a component that needs|"use client"|createContext|useState|useEffect).*(?:server component|Server Component)""",
       C.REACT, [
           ("add_use_client_directive", 0.95, "Add 'use client' directive to component file"),
           ("extract_client_component", 0.8, "Extract client-side logic to separate component"),
       ]),
    _p("react_key_missing", r'Each child in a (?:list|array) should have a unique "key" prop', C.REACT, [
        ("add_key_prop", 0.95, "Add unique key prop to list items"),
    ]),
    _p("react_cannot_update_unmounted",
       r"Can't perform a React state update on (?:an unmounted|a component that)", C.REACT, [
           ("add_cleanup_effect", 0.9, "Add cleanup function to useEffect"),
           ("add_mounted_ref", 0.7, "Add isMounted ref guard"),
       ]),
    _p("nextjs_image_error", r"Invalid src prop.*on.*next/image", C.NEXTJS, [
        ("add_image_domain", 0.9, "Add domain to images config in next.config.js"),
        ("use_unoptimized", 0.6, "Set unoptimized: true for external images"),
    ]),
    _p("nextjs_prerender_error", r'Error occurred prerendering page "(.+)"', C.NEXTJS, [
        ("add_dynamic_export", 0.85, "Mark {1} as dynamic with export const dynamic = 'force-dynamic'"),
        ("add_error_boundary", 0.7, "Add error boundary to page {1}"),
    ]),
    _p("nextjs_metadata_error",
       r'You are attempting to export "metadata" from a component marked with "use client"',
       C.NEXTJS, [
           ("move_metadata_to_server", 0.95, "Move metadata export to a server component (remove 'use client')"),
           ("use_generate_metadata", 0.8, "Use generateMetadata function instead"),
       ]),
    _p("nextjs_dynamic_server_usage", r"Dynamic server usage: (.+)", C.NEXTJS, [
        ("add_dynamic_export", 0.9, "Add dynamic = 'force-dynamic' for: {1}"),
        ("wrap_in_suspense", 0.7, "Wrap server-side data fetch in Suspense"),
    ]),
    _p("nextjs_route_conflict",
       r'Conflicting app and page files? (?:were|was) found.*"(.+)"', C.NEXTJS, [
           ("remove_pages_route", 0.9, "Remove pages/ route conflicting with app/ route {1}"),
       ]),
    _p("nextjs_build_standalone_missing", r"Could not find a production build.*\.next", C.NEXTJS, [
        ("run_next_build", 0.95, "Run 'next build' before 'next start'"),
        ("check_output_standalone", 0.7, "Verify output: 'standalone' in next.config.js"),
    ]),
    _p("ssr_window_not_defined",
       r"(?:window|document|navigator|localStorage|sessionStorage) is not defined", C.NEXTJS, [
           ("add_use_client", 0.9, "Add 'use client' directive"),
           ("add_typeof_guard", 0.85, "Add typeof window !== 'undefined' guard"),
           ("use_dynamic_import", 0.8, "Use next/dynamic with ssr: false"),
       ]),
]

# ─── Styles and bundling ──────────────────────────────────────────────

_STYLES_AND_BUNDLING = [
    _p("tailwind_class_not_found", r"The `(.+)` class does not exist", C.TAILWIND, [
        ("add_to_safelist", 0.8, "Add {1} to Tailwind safelist"),
        ("fix_class_name", 0.9, "Fix Tailwind class name {1}"),
    ]),
    _p("postcss_error", r"(?:PostCSS|postcss).*(?:Error|error):?\s*(.+)", C.CSS, [
        ("fix_postcss_syntax", 0.8, "Fix PostCSS error: {1}"),
        ("update_postcss_config", 0.6, "Update postcss.config.js"),
    ]),
    _p("css_module_error",
       r"(?:CSS Modules|css module).*(?:not found|undefined|can't resolve) '(.+)'", C.CSS, [
           ("create_css_module", 0.9, "Create missing CSS module {1}"),
           ("fix_import_path", 0.8, "Fix CSS module import path {1}"),
       ]),
    _p("sass_error", r"SassError: (.+)", C.CSS, [
        ("fix_sass_syntax", 0.8, "Fix SASS error: {1}"),
        ("install_sass", 0.7, "Install sass package"),
    ]),
    _p("webpack_compilation_error", r"webpack.*(?:error|Error).*in (.+)", C.BUNDLER, [
        ("check_webpack_config", 0.7, "Check webpack config for {1}"),
        ("clear_webpack_cache", 0.8, "Clear .next/cache and node_modules/.cache"),
    ]),
    _p("turbopack_error", r"(?:Turbopack|turbopack).*(?:error|Error):?\s*(.+)", C.BUNDLER, [
        ("fall_back_to_webpack", 0.7, "Disable Turbopack and use webpack"),
        ("fix_turbopack_compat", 0.8, "Fix Turbopack error: {1}"),
    ]),
    _p("chunk_load_failed", r"ChunkLoadError: Loading chunk (.+) failed", C.BUNDLER, [
        ("clear_next_cache", 0.9, "Clear .next cache and rebuild"),
        ("fix_public_path", 0.7, "Fix publicPath/assetPrefix in next.config.js"),
    ]),
]

# ─── Dependencies and lockfiles ───────────────────────────────────────

_DEPENDENCIES = [
    _p("npm_ci_lockfile_mismatch",
       r"npm (?:ci|ERR!).*(?:lockfile|package-lock\.json).*(?:out of sync|mismatch|missing|not compatible|could not read)",
       C.DEPENDENCY, [
           ("regenerate_lockfile", 0.95, "Run npm install to regenerate package-lock.json"),
           ("delete_and_reinstall", 0.85, "Delete node_modules + lockfile and reinstall"),
       ], ignore_case=True),
    _p("npm_ci_missing_lockfile", r"npm ci.*can only install.*package-lock\.json.*present", C.DEPENDENCY, [
        ("run_npm_install_first", 0.95, "Run npm install to generate package-lock.json before npm ci"),
    ], ignore_case=True),
    _p("npm_peer_dep_conflict",
       r"npm ERR!.*(?:peer dep|peer dependency|ERESOLVE|Could not resolve dependency).*(?:conflict|unable to resolve)",
       C.DEPENDENCY, [
           ("install_legacy_peer_deps", 0.9, "Run npm install --legacy-peer-deps"),
           ("fix_version_range", 0.7, "Adjust version ranges to resolve peer dep conflict"),
       ], ignore_case=True),
    _p("npm_eresolve", r"ERESOLVE (?:unable to resolve dependency tree|overriding peer dependency)",
       C.DEPENDENCY, [
           ("install_force", 0.8, "Run npm install --force"),
           ("install_legacy_peer_deps", 0.9, "Run npm install --legacy-peer-deps"),
       ]),
    _p("npm_audit_critical", r"(\d+) critical.*vulnerabilit", C.DEPENDENCY, [
        ("npm_audit_fix", 0.85, "Run npm audit fix ({1} critical vulnerabilities)"),
    ]),
    _p("npm_enoent", r"npm ERR!.*ENOENT.*'(.+)'", C.DEPENDENCY, [
        ("create_missing_file", 0.7, "Create missing file: {1}"),
        ("reinstall_deps", 0.8, "Run npm install to restore missing files"),
    ]),
    _p("npm_engine_mismatch", r'npm ERR!.*engine.*(?:not compatible|wanted).*node[:\s]*"(.+)"',
       C.DEPENDENCY, [
           ("update_node_version", 0.8, "Update Node.js to match required version: {1}"),
           ("relax_engines", 0.6, "Relax engines field in package.json"),
       ], ignore_case=True),
]

# ─── Native binaries ──────────────────────────────────────────────────

_NATIVE = [
    _p("native_module_rebuild",
       r"(?:gyp ERR!|node-pre-gyp|prebuild-install).*(?:build error|failed|not found)", C.NATIVE, [
           ("rebuild_native", 0.9, "Run npm rebuild to recompile native modules"),
           ("install_build_tools", 0.8, "Install build tools (python3, make, g++)"),
       ], ignore_case=True),
    _p("better_sqlite3_error", r"better-sqlite3.*(?:was compiled against|NODE_MODULE_VERSION|cannot open)",
       C.NATIVE, [
           ("rebuild_sqlite", 0.95, "npm rebuild better-sqlite3"),
           ("reinstall_sqlite", 0.8, "Remove and reinstall better-sqlite3"),
       ]),
    _p("node_module_version_mismatch",
       r"was compiled against a different Node\.js version.*NODE_MODULE_VERSION (\d+)", C.NATIVE, [
           ("rebuild_native", 0.95, "npm rebuild: recompile all native modules for the current runtime"),
       ]),
    _p("sharp_error", r"(?:sharp|libvips).*(?:error|not found|failed to load)", C.NATIVE, [
        ("reinstall_sharp", 0.9, "npm install --platform=linux --arch=x64 sharp"),
        ("skip_sharp_optimization", 0.6, "Set images.unoptimized: true in next.config.js"),
    ], ignore_case=True),
]

# ─── Process runtime ──────────────────────────────────────────────────

_RUNTIME = [
    _p("port_in_use", r"EADDRINUSE.*:(\d+)", C.RUNTIME, [
        ("kill_process", 0.9, "Kill process on port {1}"),
    ]),
    _p("heap_overflow", r"JavaScript heap out of memory", C.RESOURCE, [
        ("increase_heap", 0.9, "Increase NODE_OPTIONS max-old-space-size"),
    ]),
    _p("enoent", r"ENOENT:? (?:no such file or directory).*'(.+)'", C.RUNTIME, [
        ("create_directory", 0.8, "Create missing path: {1}"),
        ("fix_file_path", 0.7, "Fix file path: {1}"),
    ]),
    _p("eacces", r"EACCES:? (?:permission denied).*'(.+)'", C.RUNTIME, [
        ("fix_permissions", 0.9, "Fix permissions on {1}"),
        ("run_as_correct_user", 0.7, "Ensure process runs as correct user"),
    ]),
    _p("econnrefused", r"ECONNREFUSED.*?(?::(\d+))?$", C.NETWORK, [
        ("start_target_service", 0.9, "Start service on port {1}"),
        ("check_hostname", 0.7, "Verify hostname and port configuration"),
    ]),
    _p("etimedout", r"ETIMEDOUT|ESOCKETTIMEDOUT|request timed? ?out", C.NETWORK, [
        ("increase_timeout", 0.8, "Increase request timeout"),
        ("check_network", 0.7, "Check network connectivity to target host"),
    ], ignore_case=True),
    _p("emfile", r"EMFILE:? (?:too many open files)", C.RESOURCE, [
        ("increase_ulimit", 0.9, "Increase file descriptor limit (ulimit -n)"),
        ("fix_fd_leak", 0.7, "Check for file descriptor leaks"),
    ]),
    _p("enomem", r"ENOMEM|Cannot allocate memory", C.RESOURCE, [
        ("increase_memory_limit", 0.8, "Increase container memory limit"),
        ("reduce_concurrency", 0.7, "Reduce concurrent operations"),
    ]),
    _p("unhandled_rejection", r"Unhandled(?:Promise)?Rejection.*: (.+)", C.RUNTIME, [
        ("add_catch_handler", 0.85, "Add .catch() handler for: {1}"),
        ("add_global_handler", 0.6, "Add global unhandledRejection handler"),
    ]),
    _p("uncaught_exception", r"UncaughtException.*: (.+)", C.RUNTIME, [
        ("add_try_catch", 0.85, "Wrap in try/catch: {1}"),
        ("add_error_boundary", 0.7, "Add error boundary for graceful handling"),
    ], ignore_case=True),
    _p("syntax_error", r"SyntaxError: (?!Unexpected token)(.+)", C.RUNTIME, [
        ("fix_syntax", 0.85, "Fix syntax error: {1}"),
    ]),
]

# ─── Containers ───────────────────────────────────────────────────────

_CONTAINERS = [
    _p("docker_build_failed", r"(?:executor failed|failed to solve).*: (.+)", C.CONTAINER, [
        ("fix_dockerfile", 0.7, "Fix Dockerfile issue: {1}"),
        ("clear_docker_cache", 0.8, "Clear Docker build cache (docker builder prune)"),
    ]),
    _p("docker_no_space", r"no space left on device", C.CONTAINER, [
        ("docker_prune", 0.95, "Run docker system prune to reclaim space"),
        ("clean_old_images", 0.8, "Remove old Docker images"),
    ]),
    _p("docker_network_error", r"(?:network|Network).*(?:not found|already exists|failed)", C.CONTAINER, [
        ("recreate_network", 0.85, "Remove and recreate Docker network"),
    ]),
    _p("docker_image_pull_failed",
       r"""(?:pull|Pull).*(?:error|failed|not found|manifest unknown).*['"](.+)['"]""", C.CONTAINER, [
           ("check_image_tag", 0.9, "Verify image tag exists: {1}"),
           ("check_registry_auth", 0.7, "Check Docker registry authentication"),
       ]),
    _p("docker_compose_version", r"version.*(?:obsolete|unsupported|invalid).*compose", C.CONTAINER, [
        ("update_compose_syntax", 0.9, "Update docker-compose.yml to v2+ syntax"),
    ], ignore_case=True),
    _p("docker_healthcheck_unhealthy", r"(?:health check|healthcheck).*(?:failed|unhealthy|timed? ?out)",
       C.CONTAINER, [
           ("increase_start_period", 0.8, "Increase healthcheck start_period"),
           ("fix_health_endpoint", 0.7, "Fix health check endpoint or command"),
       ], ignore_case=True),
]

# ─── Databases ────────────────────────────────────────────────────────

_DATABASES = [
    _p("sqlite_corrupt", r"SQLITE_CORRUPT|database disk image is malformed", C.DATABASE, [
        ("restore_from_backup", 0.9, "Restore database from latest backup"),
        ("run_integrity_check", 0.8, "Run PRAGMA integrity_check and attempt repair"),
    ]),
    _p("sqlite_busy", r"SQLITE_BUSY|database is locked", C.DATABASE, [
        ("enable_wal_mode", 0.9, "Enable WAL mode: PRAGMA journal_mode=WAL"),
        ("increase_busy_timeout", 0.8, "Increase busy_timeout PRAGMA"),
    ]),
    _p("sqlite_readonly", r"SQLITE_READONLY|attempt to write a readonly database", C.DATABASE, [
        ("fix_db_permissions", 0.9, "Fix database file permissions"),
        ("check_volume_mount", 0.8, "Ensure Docker volume is mounted read-write"),
    ]),
    _p("pg_connection_refused", r"(?:PostgreSQL|pg|FATAL).*(?:connection refused|could not connect)",
       C.DATABASE, [
           ("start_postgres", 0.9, "Start PostgreSQL service"),
           ("check_pg_config", 0.7, "Check PostgreSQL host/port/credentials"),
       ], ignore_case=True),
    _p("redis_connection_error",
       r"redis.*(?:ECONNREFUSED|connection.*(?:refused|failed|timed? ?out))", C.DATABASE, [
           ("start_redis", 0.9, "Start Redis service"),
           ("check_redis_url", 0.7, "Verify REDIS_URL environment variable"),
       ], ignore_case=True),
]

# ─── Auth and TLS ─────────────────────────────────────────────────────

_AUTH_AND_TLS = [
    _p("jwt_error", r"(?:JsonWebTokenError|jwt).*(?:malformed|invalid|expired|signature)", C.AUTH, [
        ("check_jwt_secret", 0.9, "Verify JWT_SECRET matches between services"),
        ("regenerate_tokens", 0.7, "Clear expired tokens and force re-auth"),
    ], ignore_case=True),
    _p("cors_error", r"(?:CORS|Access-Control).*(?:blocked|not allowed|origin)", C.AUTH, [
        ("update_allowed_origins", 0.9, "Add origin to ALLOWED_ORIGINS environment variable"),
        ("check_cors_middleware", 0.7, "Verify CORS middleware configuration"),
    ], ignore_case=True),
    _p("ssl_cert_expired", r"(?:certificate|cert).*(?:expired|CERT_HAS_EXPIRED)", C.TLS, [
        ("renew_certificate", 0.95, "Run certbot renew to refresh TLS certificate"),
    ], ignore_case=True),
    _p("ssl_self_signed", r"SELF_SIGNED_CERT|self.signed|DEPTH_ZERO_SELF_SIGNED", C.TLS, [
        ("set_reject_unauthorized", 0.6, "Set NODE_TLS_REJECT_UNAUTHORIZED=0 (dev only)"),
        ("install_ca_cert", 0.8, "Install proper CA certificate"),
    ]),
]

# ─── Sockets and reverse proxy ────────────────────────────────────────

_NETWORK = [
    _p("websocket_error", r"(?:WebSocket|\bws\b|socket\.io).*(?:error|failed|ECONNRESET|hang up)", C.NETWORK, [
        ("check_ws_proxy", 0.8, "Verify WebSocket proxy configuration in the reverse proxy"),
        ("increase_ws_timeout", 0.7, "Increase WebSocket timeout/ping interval"),
    ], ignore_case=True),
    _p("socket_hangup", r"socket hang up|ECONNRESET", C.NETWORK, [
        ("add_keep_alive", 0.8, "Enable HTTP keep-alive"),
        ("increase_timeout", 0.7, "Increase connection timeout"),
    ]),
    _p("nginx_config_error", r"nginx.*(?:test failed|emerg|error).*(?:directive|unknown|invalid)", C.PROXY, [
        ("fix_nginx_config", 0.8, "Fix nginx configuration syntax"),
        ("nginx_test", 0.9, "Run nginx -t to validate config"),
    ], ignore_case=True),
    _p("nginx_upstream_timeout", r"upstream timed? ?out.*(?:reading|connecting)", C.PROXY, [
        ("increase_proxy_timeout", 0.9, "Increase proxy_read_timeout in nginx"),
        ("check_upstream_health", 0.8, "Check backend/frontend service health"),
    ], ignore_case=True),
]

# ─── Generic build failures (most general, declared last) ─────────────

_GENERIC = [
    _p("command_not_found", r"(?:command not found|not recognized as.*command):? (.+)", C.CONFIGURATION, [
        ("install_command", 0.85, "Install missing command: {1}"),
        ("check_path", 0.7, "Check PATH environment variable"),
    ], ignore_case=True),
    _p("json_parse_error", r"(?:SyntaxError: Unexpected token|JSON\.parse|JSON at position) ?(.+)?", C.RUNTIME, [
        ("fix_json_syntax", 0.85, "Fix JSON syntax error"),
        ("validate_json_input", 0.7, "Validate JSON input before parsing"),
    ]),
    _p("exit_code_nonzero", r"(?:exited with|exit code|returned) (?:error )?(?:code )?(\d+)", C.RUNTIME, [
        ("check_logs", 0.6, "Check logs for process exit code {1}"),
    ]),
    _p("process_killed", r"SIGKILL|SIGTERM|OOMKilled|\bkilled\b", C.RESOURCE, [
        ("increase_memory", 0.9, "Increase container/process memory limit"),
        ("add_graceful_shutdown", 0.7, "Add graceful shutdown handler"),
    ], ignore_case=True),
]

DEFAULT_PATTERNS: tuple[FailurePattern, ...] = (
    *_TYPESCRIPT,
    *_IMPORTS,
    *_LINT,
    *_UI,
    *_STYLES_AND_BUNDLING,
    *_DEPENDENCIES,
    *_NATIVE,
    *_RUNTIME,
    *_CONTAINERS,
    *_DATABASES,
    *_AUTH_AND_TLS,
    *_NETWORK,
    *_GENERIC,
)


__all__ = ["DEFAULT_PATTERNS"]
