"""Static site generator for a flat folder of markdown wiki pages."""

from build_site.builder import SiteBuildError, SiteConfig, build_site, main

__all__ = ["SiteBuildError", "SiteConfig", "build_site", "main"]
