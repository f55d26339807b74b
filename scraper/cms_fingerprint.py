"""CMS family detection from page markup and URL."""
import logging
import re
from typing import List, Optional, Tuple

from bs4 import BeautifulSoup

from processor.models import CmsFamily

logger = logging.getLogger(__name__)

GENERATOR_NAME = re.compile(r'^\s*generator\s*$', re.IGNORECASE)

# Generator meta content substring -> family, first match wins
GENERATOR_SIGNATURES: List[Tuple[str, CmsFamily]] = [
    ('govis', CmsFamily.GOVIS),
    ('onegov', CmsFamily.ONEGOV_CLOUD),
    ('typo3', CmsFamily.TYPO3),
    ('drupal', CmsFamily.DRUPAL),
    ('wordpress', CmsFamily.WORDPRESS),
    ('joomla', CmsFamily.JOOMLA),
    ('i-web', CmsFamily.IWEB),
    ('cmsbox', CmsFamily.CMSBOX),
    ('next.js', CmsFamily.NEXTJS),
]

# Strong markup markers, ordered
MARKUP_SIGNATURES: List[Tuple[Tuple[str, ...], CmsFamily]] = [
    (('govis', 'gov-is', 'govis.ch'), CmsFamily.GOVIS),
    (('onegov', 'plonetheme.onegovbear', 'ftw.simplelayout'), CmsFamily.ONEGOV_CLOUD),
    (('typo3conf', 'typo3temp', '/typo3/', 'tx-news', 'tx-sfeventmgt', 'tx-calendarize'), CmsFamily.TYPO3),
    (('localcities',), CmsFamily.LOCALCITIES),
    (('drupal.settings', 'drupal.js', 'drupal-settings-json', '/sites/default/files'), CmsFamily.DRUPAL),
    (('wp-content', 'wp-includes', 'wp-json'), CmsFamily.WORDPRESS),
    (('/media/jui/', 'joomla!', 'com_content'), CmsFamily.JOOMLA),
    (('i-web.ch', 'iweb-', 'i-web'), CmsFamily.IWEB),
    (('cmsbox', 'cms-box'), CmsFamily.CMSBOX),
    (('__next_data__', '/_next/static/'), CmsFamily.NEXTJS),
    (('data-v-app', 'vue.runtime', 'vue.js'), CmsFamily.VUE),
    (('ng-version', 'ng-app'), CmsFamily.ANGULAR),
]

URL_SIGNATURES: List[Tuple[str, CmsFamily]] = [
    ('localcities', CmsFamily.LOCALCITIES),
    ('i-web', CmsFamily.IWEB),
    ('onegov', CmsFamily.ONEGOV_CLOUD),
]

# Loose mentions only trusted when nothing stronger matched
WEAK_SIGNATURES: List[Tuple[str, CmsFamily]] = [
    ('drupal', CmsFamily.DRUPAL),
    ('wordpress', CmsFamily.WORDPRESS),
    ('typo3', CmsFamily.TYPO3),
    ('joomla', CmsFamily.JOOMLA),
]


class CmsFingerprinter:
    """Classifies the CMS family of a page. Advisory only."""

    def detect(self, html: Optional[str], url: Optional[str] = None) -> CmsFamily:
        try:
            return self._detect(html or '', url or '')
        except Exception as e:
            logger.warning(f"CMS detection failed for {url}: {e}")
            return CmsFamily.UNKNOWN

    def _detect(self, html: str, url: str) -> CmsFamily:
        generator = self.generator(html)
        if generator:
            for needle, family in GENERATOR_SIGNATURES:
                if needle in generator:
                    return family

        html_lower = html.lower()
        for needles, family in MARKUP_SIGNATURES:
            if any(needle in html_lower for needle in needles):
                return family

        url_lower = url.lower()
        for needle, family in URL_SIGNATURES:
            if needle in url_lower:
                return family

        for needle, family in WEAK_SIGNATURES:
            if needle in html_lower:
                return family

        return CmsFamily.UNKNOWN

    @staticmethod
    def generator(html: str) -> Optional[str]:
        """Lowercased content of the generator meta tag, if present."""
        if not html:
            return None
        tag = BeautifulSoup(html, 'html.parser').find('meta', attrs={'name': GENERATOR_NAME})
        if not tag:
            return None
        content = tag.get('content')
        return content.strip().lower() if content else None
